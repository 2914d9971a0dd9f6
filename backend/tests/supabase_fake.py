"""
Chainable stand-in for the supabase-py client.

Every executed query is recorded on FakeSupabase.calls. Responses are queued per
(table, operation) and consumed in order; RPCs use the table name "rpc:<name>".
"""

from collections import defaultdict, deque
from unittest.mock import MagicMock


class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.operation = None
        self.payload = None
        self.columns = None
        self.filters = []
        self.orders = []
        self.limit_count = None

    # ── Operations ──

    def select(self, columns="*", **kwargs):
        if self.operation is None:
            self.operation = "select"
        self.columns = columns
        return self

    def insert(self, payload, **kwargs):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload, **kwargs):
        self.operation = "update"
        self.payload = payload
        return self

    def upsert(self, payload, **kwargs):
        self.operation = "upsert"
        self.payload = payload
        return self

    def delete(self, **kwargs):
        self.operation = "delete"
        return self

    # ── Filters ──

    def _filter(self, op, column, value):
        self.filters.append((op, column, value))
        return self

    def eq(self, column, value):
        return self._filter("eq", column, value)

    def neq(self, column, value):
        return self._filter("neq", column, value)

    def gt(self, column, value):
        return self._filter("gt", column, value)

    def gte(self, column, value):
        return self._filter("gte", column, value)

    def lt(self, column, value):
        return self._filter("lt", column, value)

    def lte(self, column, value):
        return self._filter("lte", column, value)

    def in_(self, column, values):
        return self._filter("in", column, list(values))

    def is_(self, column, value):
        return self._filter("is", column, value)

    def or_(self, expression):
        return self._filter("or", None, expression)

    def order(self, column, desc=False, **kwargs):
        self.orders.append((column, desc))
        return self

    def limit(self, count):
        self.limit_count = count
        return self

    def execute(self):
        return self.client._resolve(self)

    # ── Assertions ──

    def filter_value(self, column, op="eq"):
        for f_op, f_column, value in self.filters:
            if f_op == op and f_column == column:
                return value
        raise KeyError(f"No {op} filter on {column}")

    def has_filter(self, column, value, op="eq"):
        return (op, column, value) in self.filters


class FakeSupabase:
    def __init__(self):
        self.calls = []
        self._queued = defaultdict(deque)
        self._always = {}
        self.auth = MagicMock()

    def respond(self, table, data=None, op=None, error=None):
        """Queue one response for the next matching query."""
        self._queued[(table, op)].append((data, error))
        return self

    def respond_rpc(self, name, data=None, error=None):
        return self.respond(f"rpc:{name}", data, op="rpc", error=error)

    def always(self, table, data=None, op=None):
        """Answer every matching query with `data` once the queue is empty."""
        self._always[(table, op)] = data
        return self

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        query = FakeQuery(self, f"rpc:{name}")
        query.operation = "rpc"
        query.payload = params
        return query

    def _resolve(self, query):
        self.calls.append(query)
        for key in ((query.table, query.operation), (query.table, None)):
            if self._queued[key]:
                data, error = self._queued[key].popleft()
                if error is not None:
                    raise error
                return FakeResult(data)
        for key in ((query.table, query.operation), (query.table, None)):
            if key in self._always:
                return FakeResult(self._always[key])
        return FakeResult(None if query.operation == "rpc" else [])

    def calls_to(self, table, op=None):
        return [q for q in self.calls if q.table == table and (op is None or q.operation == op)]

    def rpc_calls(self, name):
        return self.calls_to(f"rpc:{name}", "rpc")
