from __future__ import annotations

import secrets


def new_trace_id() -> str:
    return secrets.token_hex(16)


def new_session_id() -> str:
    return secrets.token_hex(12)


def new_run_id() -> str:
    return f"run_{secrets.token_hex(8)}"


def new_request_id() -> str:
    return f"perm_{secrets.token_hex(6)}"
