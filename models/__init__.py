from .threads import Thread, ThreadItem, Domain, CertifiedStatus, Base
from .users import User

__all__ = ["Thread", "ThreadItem", "Domain", "CertifiedStatus", "User", "Base"]
