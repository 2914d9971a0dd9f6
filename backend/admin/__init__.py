# Administration package
# Configuration, module feature, permission and user management services.

from .configuration_service import ConfigurationService, group_features_by_module, infer_data_type  # noqa: F401
from .user_service import UserAdminService  # noqa: F401
