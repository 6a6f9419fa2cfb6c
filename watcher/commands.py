"""
Command parsing, validation and access control for the Telegram surface.

Syntax:
    /list
    /add @name1,@name2,... [keyword1,-keyword2,...]
    /remove @name1,@name2,...
    /remove all | /remove clear | /clear   (needs a "confirm" reply)
"""

import re
from typing import Optional

from watcher.store import MAX_KEYWORDS_LENGTH

HANDLE_PATTERN = re.compile(r"@[A-Za-z0-9_]{1,15}")
# Comma separated name list, then optional keywords after whitespace
_ARGS_PATTERN = re.compile(r"^\s*([^,\s]+(?:\s*,\s*[^,\s]+)*)\s*(.*)$", re.DOTALL)

CLEAR_WORDS = {"all", "clear"}
CONFIRM_WORD = "confirm"

DENIED = "I'm sorry but my permissions do not allow you to use this service."
ERROR = (
    "I'm sorry, there seems to have been an error trying to process your request.\n"
    "Please try again later."
)
SUCCESS = "Awesome! Your following list was updated!"
CLEARED = "Awesome! I have cleared your following list!"
USAGE = (
    "Please use a command from the following list:\n"
    "/list\n"
    "/add <@username1,@usernameN,..> [keyword1,-keyword2,..]\n"
    "/remove <@username1,@usernameN,..|clear|all>"
)
INVALID = "I'm sorry I don't understand that command.\n\n" + USAGE
CONFIRM_PROMPT = (
    "This will remove every account you are following.\n"
    'Reply "confirm" to continue.'
)
NOTHING_TO_CONFIRM = "There is nothing waiting for confirmation."
LIST_EMPTY = "There are currently no users that I am following for you."
LIST_HEADER = "I am currently following these users:"
BAD_NAME = (
    'The username "{name}" is not a valid Twitter username!\n\n'
    'Twitter names must start with "@" and contain no special characters or spaces.'
)
KEYWORDS_TOO_LONG = f"Keyword lists can be at most {MAX_KEYWORDS_LENGTH} characters long."


class InputError(ValueError):
    """User input that is answered with a corrective message."""
    pass


def validate_handle(token: str) -> str:
    """
    Validate one "@name" token.

    Returns:
        The name without "@".

    Raises:
        InputError: The token is not a valid handle.
    """
    token = token.strip()
    if not HANDLE_PATTERN.fullmatch(token):
        raise InputError(BAD_NAME.format(name=token))
    return token[1:]


def normalize_keywords(raw: str) -> Optional[str]:
    """Normalise a keyword list. Returns None when it holds no terms."""
    terms = [t.strip() for t in raw.split(",") if t.strip() and t.strip() != "-"]
    if not terms:
        return None
    keywords = ",".join(terms)
    if len(keywords) > MAX_KEYWORDS_LENGTH:
        raise InputError(KEYWORDS_TOO_LONG)
    return keywords


def split_names(args: str) -> tuple[list[str], Optional[str]]:
    """
    Split command arguments into validated names and a keyword filter.

    Args:
        args: Text after the command, e.g. "@a, @b sports,-breaking".

    Returns:
        (names without "@", keywords or None). Duplicate names are
        dropped case-insensitively.

    Raises:
        InputError: No names, an invalid name, or oversized keywords.
    """
    match = _ARGS_PATTERN.match(args or "")
    if not match:
        raise InputError(INVALID)

    names: list[str] = []
    seen: set[str] = set()
    for token in match.group(1).split(","):
        name = validate_handle(token)
        if name.lower() not in seen:
            seen.add(name.lower())
            names.append(name)

    return names, normalize_keywords(match.group(2))


def is_clear_request(args: str) -> bool:
    """True for "/remove all" and "/remove clear"."""
    return (args or "").strip().lower() in CLEAR_WORDS


def can_use(username: Optional[str], allowed: list[str], blocked: list[str]) -> bool:
    """
    Access check for a Telegram username.

    Blocked names are always refused. An empty allow list admits everyone
    else; otherwise the name must be listed. Matching ignores case.
    """
    name = (username or "").lstrip("@").lower()
    if name and name in {b.lower() for b in blocked}:
        return False
    if not allowed:
        return True
    return bool(name) and name in {a.lower() for a in allowed}


def format_list(subscriptions) -> str:
    """Render a chat's subscriptions for /list."""
    if not subscriptions:
        return LIST_EMPTY
    lines = [LIST_HEADER]
    for sub in subscriptions:
        line = f"- @{sub.name}"
        if sub.keywords:
            line += f" ({sub.keywords})"
        if not sub.resolved_id:
            line += " [pending]"
        lines.append(line)
    return "\n".join(lines)


class PendingConfirmations:
    """Chats that asked to clear their list and owe a "confirm" reply."""

    def __init__(self) -> None:
        self._chats: set[int] = set()

    def request(self, chat_id: int) -> None:
        self._chats.add(chat_id)

    def consume(self, chat_id: int) -> bool:
        """Return True (and forget the chat) if a confirmation was pending."""
        if chat_id in self._chats:
            self._chats.discard(chat_id)
            return True
        return False

    def discard(self, chat_id: int) -> None:
        self._chats.discard(chat_id)

    def __contains__(self, chat_id: int) -> bool:
        return chat_id in self._chats
