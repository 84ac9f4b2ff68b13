"""
BYOB prefill hand-off.

The bundle builder page accepts ``?prefill=<base64url(JSON)>`` with a
``{"lines": [{"packKey", "qty"}]}`` payload. This module builds and reads that
token, and ranks candidate builder rows for a pack key with a list of
independent matcher strategies (tried in order, first hit wins).
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from schemas import PackLine, parse_pack_lines
from services.errors import PrefillDecodeError
from settings import BYOB_PREFILL_URL

logger = logging.getLogger(__name__)

PREFILL_PARAM = "prefill"

# Row shape: {"attrs": {"data-pack-key": "..."}, "text": "..."}
Row = Mapping[str, Any]
RowMatcher = Callable[[Row, str], bool]


def encode_prefill(lines: Sequence[PackLine]) -> str:
    payload = {"lines": [line.to_dict() for line in lines if line.pack_key and line.qty > 0]}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_prefill(token: str) -> List[PackLine]:
    """Decode a prefill token into lines that have a pack key and qty > 0."""
    if not token:
        raise PrefillDecodeError("Empty prefill token")
    padded = token + "=" * (-len(token) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise PrefillDecodeError(f"Invalid prefill payload: {e}") from e
    if not isinstance(payload, dict) or not isinstance(payload.get("lines"), list):
        raise PrefillDecodeError("Prefill payload has no 'lines' list")
    return [line for line in parse_pack_lines(payload["lines"]) if line.pack_key and line.qty > 0]


def build_prefill_url(lines: Sequence[PackLine], base_url: str = BYOB_PREFILL_URL) -> str:
    parts = urlsplit(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != PREFILL_PARAM]
    query.append((PREFILL_PARAM, encode_prefill(lines)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


# --- Row matching ---

def match_data_attribute(row: Row, pack_key: str) -> bool:
    attrs = row.get("attrs") or {}
    return attrs.get("data-pack-key") == pack_key or attrs.get("data-pack") == pack_key


def match_exact_text(row: Row, pack_key: str) -> bool:
    return str(row.get("text") or "").strip() == pack_key


DEFAULT_MATCHERS: tuple = (match_data_attribute, match_exact_text)


def match_pack_row(
    rows: Sequence[Row],
    pack_key: str,
    matchers: Sequence[RowMatcher] = DEFAULT_MATCHERS,
) -> Optional[Row]:
    """First row accepted by the highest-ranked matcher that accepts any row."""
    for matcher in matchers:
        for row in rows:
            if matcher(row, pack_key):
                return row
    return None


def plan_prefill(rows: Sequence[Row], lines: Sequence[PackLine]) -> Dict[str, Optional[Row]]:
    """Row chosen for every line (None where nothing matched)."""
    plan = {line.pack_key: match_pack_row(rows, line.pack_key) for line in lines}
    applied = sum(1 for row in plan.values() if row is not None)
    logger.info("Prefill matched %d/%d lines", applied, len(lines))
    return plan
