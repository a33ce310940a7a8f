"""
response_parser.py — Turns the model's raw completion into a typed result.

Malformed output is the most common real-world failure, so `parse` never
raises: anything that is not the expected JSON shape becomes the mode's
fallback result carrying a truncated copy of the offending text.
"""

import json
import logging
import re
from typing import Any, List, Type, TypeVar

from pydantic import BaseModel, ValidationError

from evaluator.core.errors import ResponseShapeError
from evaluator.core.fallbacks import UNPARSEABLE_FEEDBACK, excerpt, fallback_result
from evaluator.core.schemas import (
    BatchEntry,
    BatchTextRequest,
    EvaluationRequest,
    EvaluationResult,
    FullSheetEntry,
    FullSheetImageRequest,
    FullSheetResult,
    SingleResult,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE = re.compile(r"```(?:json|JSON)?")


def strip_code_fences(text: str) -> str:
    """Removes ```json / ``` markers and surrounding whitespace."""
    return _FENCE.sub("", text or "").strip()


def load_json(text: str) -> Any:
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise ResponseShapeError("Model returned an empty response", raw_text=text or "")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ResponseShapeError(f"Model returned non-JSON text ({e.msg})", raw_text=cleaned) from e


def _entries(items: Any, model: Type[ModelT], raw_text: str) -> List[ModelT]:
    """
    Validates per-question entries one by one. A malformed entry is dropped
    (the orchestrator reports its question as unevaluated); only a response
    with no usable entry at all is a shape error.
    """
    if not isinstance(items, list):
        raise ResponseShapeError("Expected a JSON array of per-question results", raw_text=raw_text)

    entries = []
    for index, item in enumerate(items):
        try:
            entries.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping malformed entry #{index + 1}: {e.errors()[0].get('msg')}")
    if items and not entries:
        raise ResponseShapeError("No usable entries in the response", raw_text=raw_text)
    return entries


def validate_shape(data: Any, request: EvaluationRequest, raw_text: str = "") -> EvaluationResult:
    """Validates decoded JSON against the shape expected for `request`'s mode."""
    try:
        if isinstance(request, BatchTextRequest):
            # Some completions wrap the array: {"results": [...]}
            if isinstance(data, dict):
                data = data.get("results", data.get("answers"))
            return _entries(data, BatchEntry, raw_text)
        if not isinstance(data, dict):
            raise ResponseShapeError("Expected a JSON object", raw_text=raw_text)
        if isinstance(request, FullSheetImageRequest):
            entries = _entries(data.get("results"), FullSheetEntry, raw_text)
            sheet = FullSheetResult.model_validate({**data, "results": []})
            sheet.results = entries
            return sheet
        return SingleResult.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        where = ".".join(str(part) for part in err.get("loc", ()))
        raise ResponseShapeError(f"Response does not match the expected shape: {where} {err.get('msg')}",
                                 raw_text=raw_text) from e


class ResponseParser:
    def parse(self, raw_text: str, request: EvaluationRequest) -> EvaluationResult:
        try:
            data = load_json(raw_text)
            return validate_shape(data, request, raw_text=strip_code_fences(raw_text))
        except ResponseShapeError as e:
            logger.error(f"JSON Parse Error: {e.message}. Raw: {excerpt(e.raw_text)}")
            return self.fallback(request, e)

    def fallback(self, request: EvaluationRequest, error: ResponseShapeError) -> EvaluationResult:
        diagnostic = excerpt(error.raw_text)
        improvements = [error.message]
        if diagnostic:
            improvements.append(f"Model output: {diagnostic}")
        return fallback_result(request, feedback=UNPARSEABLE_FEEDBACK, improvements=improvements)


def parse_response(raw_text: str, request: EvaluationRequest) -> EvaluationResult:
    return ResponseParser().parse(raw_text, request)
