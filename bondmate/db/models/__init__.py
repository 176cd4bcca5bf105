"""
SQLAlchemy database models.

Models are organized by concern:
- base: Base declarative class
- user: User accounts and their relationship cache
- partner: Partner requests, partnerships, breakup requests, history
- activity: Audit log
- notification: In-app notifications and push subscriptions

Import any model from this module:
    from bondmate.db.models import User, PartnerRequest, Partner
"""

# Base class (must be imported first)
from .base import Base

# User models
from .user import User

# Partner lifecycle models
from .partner import Partner, PartnerRequest, BreakupRequest, PartnerHistory

# Audit models
from .activity import ActivityLog

# Notification models
from .notification import Notification, PushSubscription

__all__ = [
    "Base",
    "User",
    "Partner",
    "PartnerRequest",
    "BreakupRequest",
    "PartnerHistory",
    "ActivityLog",
    "Notification",
    "PushSubscription",
]
