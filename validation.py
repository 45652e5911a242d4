# validation.py
# Field-level checks for trainee credentials (admin creation and self signup).
# Validators return {field: message}; an empty dict means the input is valid.

import re
from typing import Container, Dict, Mapping

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_WS_RE = re.compile(r"\s")

TRAINEE_FIELDS = ("username", "password", "name", "email", "id")


def field_error(name: str, value: str, existing_usernames: Container[str] = ()) -> str:
    value = value or ""
    trimmed = value.strip()
    if name == "username":
        if not trimmed:
            return "Required."
        if len(trimmed) < 3:
            return "Min 3 chars."
        if _WS_RE.search(trimmed):
            return "No spaces."
        if trimmed in existing_usernames:
            return "In use."
    elif name == "password":
        if not trimmed:
            return "Required."
        if len(trimmed) < 6:
            return "Min 6 chars."
    elif name == "name":
        if not trimmed:
            return "Required."
    elif name == "email":
        if trimmed and not EMAIL_RE.match(trimmed):
            return "Invalid email."
    return ""


def validate_trainee_form(form: Mapping[str, str], existing_usernames: Container[str] = ()) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for name in ("username", "password", "name", "email"):
        err = field_error(name, form.get(name) or "", existing_usernames)
        if err:
            errors[name] = err
    return errors


def validate_login_form(form: Mapping[str, str]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not (form.get("username") or "").strip():
        errors["username"] = "Required."
    if not (form.get("password") or "").strip():
        errors["password"] = "Required."
    return errors


def clean_trainee_form(form: Mapping[str, str]) -> Dict[str, str]:
    return {k: (form.get(k) or "").strip() for k in TRAINEE_FIELDS}
