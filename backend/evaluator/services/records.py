import datetime
from typing import Any, Dict

from evaluator.core.schemas import (
    BatchTextRequest,
    EvaluationRequest,
    EvaluationResult,
    FullSheetImageRequest,
    FullSheetResult,
    SingleImageRequest,
    SingleTextRequest,
    dump_result,
)


def request_echo(request: EvaluationRequest) -> Dict[str, Any]:
    """The request as it should be stored: image payloads replaced by a page count."""
    echo = request.to_payload()
    if isinstance(request, (SingleImageRequest, FullSheetImageRequest)):
        echo.pop("images", None)
        echo["pageCount"] = len(request.images)
    echo["mode"] = request.mode.value
    return echo


def score_summary(request: EvaluationRequest, result: EvaluationResult) -> Dict[str, float]:
    if isinstance(result, FullSheetResult):
        earned, maximum = result.total_score, result.total_max_marks
    elif isinstance(request, BatchTextRequest):
        marks = {q.id: q.marks for q in request.questions}
        earned = sum(entry.score for entry in result)
        maximum = sum(marks.values())
    elif isinstance(request, (SingleTextRequest, SingleImageRequest)):
        earned, maximum = result.score, request.max_marks
    else:
        raise TypeError(f"Unsupported request type: {type(request).__name__}")

    percentage = round(earned / maximum * 100, 2) if maximum else 0.0
    return {"earned": round(earned, 2), "max": maximum, "percentage": percentage}


def build_result_record(request: EvaluationRequest, result: EvaluationResult) -> Dict[str, Any]:
    """Document persisted after an evaluation: what was asked, what came back, and the totals."""
    return {
        "requestEcho": request_echo(request),
        "result": dump_result(result),
        "summary": score_summary(request, result),
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
