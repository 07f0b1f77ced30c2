import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


def split_records(raw: Union[str, bytes]) -> List[str]:
    """Split one channel delivery into its newline-delimited JSON records."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return [line.strip() for line in raw.strip().split("\n") if line.strip()]


def parse_records(raw: Union[str, bytes]) -> Tuple[List[Dict[str, Any]], int]:
    """
    Decode every record in a delivery independently.
    Returns (documents, skipped) — a record that is not a JSON object is logged
    and skipped without affecting its siblings.
    """
    documents: List[Dict[str, Any]] = []
    skipped = 0
    for record in split_records(raw):
        try:
            doc = json.loads(record)
        except json.JSONDecodeError as exc:
            logger.warning("Skipping unparseable record (%s): %.80s", exc, record)
            skipped += 1
            continue
        if not isinstance(doc, dict):
            logger.warning("Skipping non-object record: %.80s", record)
            skipped += 1
            continue
        documents.append(doc)
    return documents, skipped


def document_room_code(doc: Dict[str, Any]) -> Optional[str]:
    """Room code a document declares for itself, top-level or inside its payload."""
    code = doc.get("roomCode")
    if code is None and isinstance(doc.get("payload"), dict):
        code = doc["payload"].get("roomCode")
    return code if isinstance(code, str) else None
