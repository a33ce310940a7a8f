"""
fallbacks.py — Zero-score results that keep the shape of each request mode.

Whatever fails (gateway, parsing, backend, missing key) the caller still gets
something it can render and persist.
"""

from typing import List, Optional

from evaluator.core.schemas import (
    BatchEntry,
    BatchTextRequest,
    EvaluationRequest,
    EvaluationResult,
    FullSheetEntry,
    FullSheetImageRequest,
    FullSheetResult,
    SingleImageRequest,
    SingleResult,
)

DIAGNOSTIC_LIMIT = 200

UNPARSEABLE_FEEDBACK = "AI evaluation could not be parsed."
GATEWAY_FEEDBACK = "Unable to grade this answer at the moment. Please try again later."
IMAGE_FEEDBACK = "Could not process the image. Please try again with a clearer photo."
SHEET_FEEDBACK = "Failed to process the answer sheet. Please try again with a clearer photo."
NO_ANSWER_FEEDBACK = "No answer was provided for this question."
MISSING_ENTRY_FEEDBACK = "The evaluator returned no result for this question."


def excerpt(text: Optional[str], limit: int = DIAGNOSTIC_LIMIT) -> str:
    """First `limit` characters of `text`, marked when truncated."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def fallback_result(
    request: EvaluationRequest,
    feedback: Optional[str] = None,
    improvements: Optional[List[str]] = None,
) -> EvaluationResult:
    """Builds the failure result for `request`'s mode with score 0 everywhere."""
    improvements = list(improvements or [])

    if isinstance(request, BatchTextRequest):
        return [
            BatchEntry(
                question_id=q.id,
                score=0,
                improvements=improvements,
                feedback=feedback or GATEWAY_FEEDBACK,
            )
            for q in request.questions
        ]

    if isinstance(request, FullSheetImageRequest):
        feedback = feedback or IMAGE_FEEDBACK
        return FullSheetResult(
            extracted_text="",
            results=[
                FullSheetEntry(
                    question_id=q.id,
                    question_number=index + 1,
                    extracted_answer="",
                    score=0,
                    max_marks=q.marks,
                    improvements=improvements,
                    feedback=feedback,
                )
                for index, q in enumerate(request.questions)
            ],
            total_score=0,
            total_max_marks=sum(q.marks for q in request.questions),
            overall_feedback=SHEET_FEEDBACK,
        )

    if isinstance(request, SingleImageRequest):
        return SingleResult(
            score=0,
            improvements=improvements,
            feedback=feedback or IMAGE_FEEDBACK,
            extracted_text="",
            max_marks=request.max_marks,
        )

    return SingleResult(score=0, improvements=improvements, feedback=feedback or GATEWAY_FEEDBACK)
