# Third-party integrations package
# MondayClient talks to the Monday.com GraphQL API; IntegrationStore keeps the per-organization connection.

from .monday_client import MondayAPIError, MondayClient  # noqa: F401
from .store import IntegrationStore  # noqa: F401
