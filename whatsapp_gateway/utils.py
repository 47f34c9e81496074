import re
from typing import Any, Optional

CONTACT_SUFFIX = "@c.us"

_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_phone(phone: Any) -> str:
    """
    Convert a caller-supplied phone like '+1 (555) 123-4567' into the chat id
    WhatsApp Web expects: '15551234567@c.us'.

    - Drops every character that is not a decimal digit
    - Appends '@c.us' unless already present
    - No length or country-code validation
    """
    local = _NON_DIGITS.sub("", str(phone))
    if CONTACT_SUFFIX not in local:
        local = f"{local}{CONTACT_SUFFIX}"
    return local


def jid_to_phone(chat_id: Optional[str]) -> Optional[str]:
    """
    Convert '94770889232@c.us' back to '+94770889232'.
    Returns None for empty input.
    """
    if not chat_id:
        return None
    local = str(chat_id).strip().split("@", 1)[0]
    digits = _NON_DIGITS.sub("", local)
    if not digits:
        return None
    return f"+{digits}"
