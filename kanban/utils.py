import re
import uuid
from typing import Optional

HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def new_uuid() -> str:
    return str(uuid.uuid4())


def is_hex_color(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(HEX_COLOR_RE.match(value))
