# Importing the module registers tables with Base for create_all()
from .core import (  # noqa: F401
    # Enums
    MergeState, PaymentStatus, PayMethod,

    # Documents
    OrderDoc, PaymentRecord,

    # Audit
    AuditLog,
)

__all__ = [
    "MergeState", "PaymentStatus", "PayMethod",
    "OrderDoc", "PaymentRecord",
    "AuditLog",
]
