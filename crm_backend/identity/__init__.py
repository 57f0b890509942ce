from crm_backend.identity.models import Organization, User

__all__ = ["Organization", "User"]
