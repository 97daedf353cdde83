"""Entity managers for info items, sessions and messages."""

from .info import InfoCRUD, plan_category_expiry
from .message import MessageCRUD, generate_message_id
from .session import SessionCRUD, reclaim_sessions

__all__ = [
    "InfoCRUD",
    "MessageCRUD",
    "SessionCRUD",
    "generate_message_id",
    "plan_category_expiry",
    "reclaim_sessions",
]
