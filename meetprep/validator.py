import json
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import DossierShapeError
from .schemas import Dossier


REQUIRED_FIELDS = ("opener", "questions")
WRAPPER_KEYS = ("dossier", "report", "result")
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
MAX_SCAN_OBJECTS = 50


def _format_errors(exc: ValidationError) -> List[str]:
    messages: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = str(err.get("msg") or "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def _unwrap(candidate: Dict[str, Any]) -> Dict[str, Any]:
    if "opener" in candidate or "questions" in candidate:
        return candidate
    for key in WRAPPER_KEYS:
        inner = candidate.get(key)
        if isinstance(inner, dict):
            return inner
    return candidate


def validate_dossier(candidate: Any) -> Dossier:
    """Check a completion payload against the dossier shape.

    Accepts a mapping, a JSON string or an already-built Dossier. Raises
    DossierShapeError listing every violation so the model can correct all of
    them in one retry.
    """
    if isinstance(candidate, Dossier):
        return candidate
    if isinstance(candidate, (bytes, bytearray)):
        candidate = candidate.decode("utf-8", errors="replace")
    if isinstance(candidate, str):
        try:
            candidate = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise DossierShapeError(f"dossier is not valid JSON: {exc.msg}") from None
    if not isinstance(candidate, dict):
        raise DossierShapeError("dossier must be a JSON object")
    candidate = _unwrap(candidate)

    problems: List[str] = [f"{name}: field required" for name in REQUIRED_FIELDS if name not in candidate]
    questions = candidate.get("questions")
    if isinstance(questions, list) and len(questions) != 3:
        problems.append(f"questions: must contain exactly 3 items (got {len(questions)})")
    if problems:
        raise DossierShapeError("invalid dossier: " + "; ".join(problems), problems)

    try:
        return Dossier.model_validate(candidate)
    except ValidationError as exc:
        errors = _format_errors(exc)
        raise DossierShapeError("invalid dossier: " + "; ".join(errors), errors) from None


def _json_objects(text: str) -> List[Dict[str, Any]]:
    found: List[Dict[str, Any]] = []
    for block in _FENCE_RE.findall(text):
        try:
            parsed = json.loads(block.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            found.append(parsed)
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1 and len(found) < MAX_SCAN_OBJECTS:
        try:
            parsed, end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(parsed, dict):
            found.append(parsed)
        idx = text.find("{", end)
    return found


def _looks_like_dossier(obj: Dict[str, Any]) -> bool:
    inner = _unwrap(obj)
    return "opener" in inner or "questions" in inner


def extract_dossier_from_text(text: Optional[str], rejections: Optional[List[str]] = None) -> Optional[Dossier]:
    """Fallback completion detector for models that answer with raw JSON.

    Dossier-shaped objects that fail validation have their error message
    appended to ``rejections`` when a list is given.
    """
    if not text or "{" not in text:
        return None
    for obj in _json_objects(text):
        try:
            return validate_dossier(obj)
        except DossierShapeError as exc:
            if rejections is not None and _looks_like_dossier(obj):
                rejections.append(exc.message)
    return None
