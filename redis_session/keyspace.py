"""Key-space layout for info items, sessions and messages.

Short one-letter prefixes keep key strings small at scale:

    i:<category>:<key>              info item (JSON)
    c:<category>                    set of info keys in a category
    s:<session_id>                  session (JSON)
    s:<session_id>:m:<message_id>   message (JSON)
    s:<session_id>:ms               list of message ids, newest first
    s:<session_id>:ms:index         set of message ids
    sessions:index                  set of all session ids

Categories and session ids may not contain the separator; info keys and
message ids may, because they are always the last segment.
"""

from typing import Iterable, List, Tuple

from redis_session.errors import InvalidKeyError

SEPARATOR = ":"

INFO_PREFIX = "i"
SESSION_PREFIX = "s"
MESSAGE_PREFIX = "m"
CATEGORY_PREFIX = "c"

SESSIONS_INDEX = "sessions:index"

CACHE_INFO = "cache:info"
CACHE_SESSIONS = "cache:sessions"
CACHE_MESSAGES = "cache:messages"


def _check_segment(value: str, what: str) -> str:
    if not value:
        raise InvalidKeyError(f"{what} must not be empty")
    if SEPARATOR in value:
        raise InvalidKeyError(f"{what} '{value}' must not contain '{SEPARATOR}'")
    return value


def _check_tail(value: str, what: str) -> str:
    if not value:
        raise InvalidKeyError(f"{what} must not be empty")
    return value


def info_key(category: str, key: str) -> str:
    """Primary key of an info item."""
    _check_segment(category, "category")
    _check_tail(key, "info key")
    return f"{INFO_PREFIX}:{category}:{key}"


def parse_info_key(redis_key: str) -> Tuple[str, str]:
    """Recover (category, key) from an info primary key."""
    prefix, sep, rest = redis_key.partition(SEPARATOR)
    category, sep2, key = rest.partition(SEPARATOR)
    if prefix != INFO_PREFIX or not sep or not sep2 or not category or not key:
        raise InvalidKeyError(f"'{redis_key}' is not an info key")
    return category, key


def category_key(category: str) -> str:
    """Index set holding the keys of one category."""
    return f"{CATEGORY_PREFIX}:{_check_segment(category, 'category')}"


def session_key(session_id: str) -> str:
    """Primary key of a session."""
    return f"{SESSION_PREFIX}:{_check_segment(session_id, 'session id')}"


def is_session_key(redis_key: str) -> bool:
    """True for `s:<id>` keys, False for the per-session list/index/message keys."""
    parts = redis_key.split(SEPARATOR)
    return len(parts) == 2 and parts[0] == SESSION_PREFIX and bool(parts[1])


def session_id_from_key(redis_key: str) -> str:
    """Return the session id of a primary session key."""
    if not is_session_key(redis_key):
        raise InvalidKeyError(f"'{redis_key}' is not a session key")
    return redis_key.split(SEPARATOR, 1)[1]


def message_key(session_id: str, message_id: str) -> str:
    """Primary key of a message."""
    return f"{session_key(session_id)}:{MESSAGE_PREFIX}:{_check_tail(message_id, 'message id')}"


def is_message_key(redis_key: str) -> bool:
    """True for `s:<sid>:m:<mid>` keys."""
    parts = redis_key.split(SEPARATOR, 3)
    return (
        len(parts) == 4
        and parts[0] == SESSION_PREFIX
        and parts[2] == MESSAGE_PREFIX
        and bool(parts[1])
        and bool(parts[3])
    )


def session_messages_key(session_id: str) -> str:
    """Ordered list of message ids used for pagination."""
    return f"{session_key(session_id)}:{MESSAGE_PREFIX}s"


def session_messages_index_key(session_id: str) -> str:
    """Unordered set of message ids used for enumeration and search."""
    return f"{session_messages_key(session_id)}:index"


# Scan patterns

def info_pattern(query: str | None = None, category: str | None = None) -> str:
    if category:
        return f"{INFO_PREFIX}:{_check_segment(category, 'category')}:*{query or ''}*"
    if query:
        return f"{INFO_PREFIX}:*{query}*"
    return f"{INFO_PREFIX}:*"


def session_pattern(query: str | None = None) -> str:
    if query:
        return f"{SESSION_PREFIX}:*{query}*"
    return f"{SESSION_PREFIX}:*"


def message_pattern() -> str:
    return f"{SESSION_PREFIX}:*:{MESSAGE_PREFIX}:*"


def category_pattern() -> str:
    return f"{CATEGORY_PREFIX}:*"


# Local cache keys. Scope keys end with the separator so that invalidating
# category "docs" leaves category "docs2" alone.

def info_cache_key(category: str, key: str) -> str:
    return f"{CACHE_INFO}:{category}:{key}"


def info_cache_scope(category: str) -> str:
    return f"{CACHE_INFO}:{category}:"


def session_cache_key(session_id: str) -> str:
    return f"{CACHE_SESSIONS}:id:{session_id}"


def active_sessions_cache_key() -> str:
    return f"{CACHE_SESSIONS}:active"


def message_cache_key(session_id: str, message_id: str) -> str:
    return f"{CACHE_MESSAGES}:{session_id}:msg:{message_id}"


def message_page_cache_key(session_id: str, limit: int, offset: int) -> str:
    return f"{CACHE_MESSAGES}:{session_id}:page:{limit}:{offset}"


def recent_messages_cache_key(session_id: str, hours: int) -> str:
    return f"{CACHE_MESSAGES}:{session_id}:recent:{hours}h"


def message_cache_scope(session_id: str) -> str:
    return f"{CACHE_MESSAGES}:{session_id}:"


def session_owned_keys(session_id: str, message_ids: Iterable[str]) -> List[str]:
    """Every key a session owns: itself, its messages, the message list and index."""
    keys = [session_key(session_id)]
    keys.extend(message_key(session_id, message_id) for message_id in message_ids)
    keys.append(session_messages_key(session_id))
    keys.append(session_messages_index_key(session_id))
    return keys
