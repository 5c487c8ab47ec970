# Import all models so Base.metadata is populated for create_all.
from consenthub.models.user import User  # noqa: F401
from consenthub.models.session import Session  # noqa: F401
from consenthub.models.audit import AuditLogEvent  # noqa: F401
from consenthub.models.consent import ProviderConsent  # noqa: F401
