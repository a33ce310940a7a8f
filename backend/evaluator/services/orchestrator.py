"""
orchestrator.py — The evaluation pipeline.

Every mode runs the same stages: prompt -> model call -> parse -> normalize.
Failures of the model call or of its output become the mode's fallback result,
so callers always get a structurally valid answer. Nothing is kept between
calls; one orchestrator can serve any number of concurrent evaluations.
"""

import logging
from typing import Dict, List, Optional, Sequence, Union

from evaluator.core.errors import GatewayError
from evaluator.core.fallbacks import (
    GATEWAY_FEEDBACK,
    IMAGE_FEEDBACK,
    MISSING_ENTRY_FEEDBACK,
    NO_ANSWER_FEEDBACK,
    fallback_result,
)
from evaluator.core.schemas import (
    BatchEntry,
    BatchResult,
    BatchTextRequest,
    EvaluationRequest,
    EvaluationResult,
    FullSheetEntry,
    FullSheetImageRequest,
    FullSheetResult,
    ImagePart,
    QuestionSpec,
    SingleImageRequest,
    SingleResult,
    SingleTextRequest,
)
from evaluator.services.model_gateway import ModelGateway
from evaluator.services.prompt_builder import build_prompt
from evaluator.services.response_parser import ResponseParser

logger = logging.getLogger(__name__)

NOT_ATTEMPTED = "Not attempted"


def clamp_score(score: float, max_marks: float) -> float:
    """Keeps `score` inside [0, max_marks] whatever the model claimed."""
    return min(max(float(score), 0.0), float(max_marks))


def _index_by_id(entries: Sequence[Union[BatchEntry, FullSheetEntry]]) -> Dict[str, Union[BatchEntry, FullSheetEntry]]:
    by_id = {}
    for entry in entries:
        if entry.question_id in by_id:
            logger.warning(f"Duplicate result for question {entry.question_id}; keeping the first one")
            continue
        by_id[entry.question_id] = entry
    return by_id


class EvaluationOrchestrator:
    def __init__(self, gateway: ModelGateway, parser: Optional[ResponseParser] = None):
        self.gateway = gateway
        self.parser = parser or ResponseParser()

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        """Routes a validated request to the entry point for its mode."""
        if isinstance(request, SingleTextRequest):
            return await self.evaluate_single_text(request)
        if isinstance(request, BatchTextRequest):
            return await self.evaluate_batch_text(request)
        if isinstance(request, SingleImageRequest):
            return await self.evaluate_single_image(request)
        if isinstance(request, FullSheetImageRequest):
            return await self.evaluate_full_sheet(request)
        raise TypeError(f"Unsupported request type: {type(request).__name__}")

    # --- Entry points ---

    async def evaluate_single_text(self, request: SingleTextRequest) -> SingleResult:
        result = await self._run(request)
        return normalize_single(result, request.max_marks)

    async def evaluate_batch_text(self, request: BatchTextRequest) -> BatchResult:
        answered = [q for q in request.questions if request.answer_for(q.id)]
        skipped = len(request.questions) - len(answered)
        logger.info(f"[EVALUATE] Batch of {len(request.questions)} questions ({skipped} unanswered)")

        graded: BatchResult = []
        if answered:
            sub_request = BatchTextRequest(questions=answered, answers=request.answers)
            graded = await self._run(sub_request)
        return join_batch(request, graded)

    async def evaluate_single_image(self, request: SingleImageRequest) -> SingleResult:
        result = await self._run(request, images=request.images)
        return normalize_result(request, result)

    async def evaluate_full_sheet(self, request: FullSheetImageRequest) -> FullSheetResult:
        logger.info(f"[EVALUATE] Full sheet: {len(request.questions)} questions, {len(request.images)} page(s)")
        result = await self._run(request, images=request.images)
        return normalize_full_sheet(result, request)

    # --- Pipeline ---

    async def _run(self, request: EvaluationRequest, images: Sequence[ImagePart] = ()) -> EvaluationResult:
        prompt = build_prompt(request)
        try:
            raw = await self.gateway.generate(prompt, images=images, mode=request.mode)
        except GatewayError as e:
            logger.warning(f"Falling back for {request.mode.value}: {e}")
            feedback = IMAGE_FEEDBACK if request.mode.is_image else GATEWAY_FEEDBACK
            return fallback_result(request, feedback=feedback, improvements=[f"Evaluation failed: {e}"])
        return self.parser.parse(raw, request)


# --- Normalization ---
# Shared with the client, which applies the same rules to backend results.

def normalize_single(result: SingleResult, max_marks: int) -> SingleResult:
    score = clamp_score(result.score, max_marks)
    if result.is_relevant is False:
        score = 0.0
    if score != result.score:
        logger.info(f"Adjusted score {result.score} -> {score} (max {max_marks})")
    result.score = score
    return result


def join_batch(request: BatchTextRequest, graded: BatchResult) -> BatchResult:
    """One entry per requested question, in request order."""
    by_id = _index_by_id(graded)
    joined = []
    for q in request.questions:
        if not request.answer_for(q.id):
            joined.append(BatchEntry(question_id=q.id, score=0, improvements=[], feedback=NO_ANSWER_FEEDBACK))
            continue
        entry = by_id.get(q.id)
        if entry is None:
            entry = BatchEntry(question_id=q.id, score=0, improvements=[], feedback=MISSING_ENTRY_FEEDBACK)
        entry.score = clamp_score(entry.score, q.marks)
        joined.append(entry)
    return joined


def _missing_sheet_entry(q: QuestionSpec) -> FullSheetEntry:
    return FullSheetEntry(
        question_id=q.id,
        extracted_answer=NOT_ATTEMPTED,
        score=0,
        max_marks=q.marks,
        improvements=[],
        feedback=MISSING_ENTRY_FEEDBACK,
    )


def normalize_full_sheet(result: FullSheetResult, request: FullSheetImageRequest) -> FullSheetResult:
    by_id = _index_by_id(result.results)
    entries: List[FullSheetEntry] = []
    for index, q in enumerate(request.questions):
        entry = by_id.get(q.id) or _missing_sheet_entry(q)
        entry.question_number = index + 1
        entry.max_marks = q.marks
        entry.score = clamp_score(entry.score, q.marks)
        if entry.is_relevant is False:
            entry.score = 0.0
        entries.append(entry)

    total_score = sum(e.score for e in entries)
    total_max = sum(q.marks for q in request.questions)
    if (result.total_score, result.total_max_marks) != (total_score, total_max):
        logger.info(
            f"Recomputed totals {total_score}/{total_max} "
            f"(model said {result.total_score}/{result.total_max_marks})"
        )
    result.results = entries
    result.total_score = total_score
    result.total_max_marks = total_max
    return result


def normalize_result(request: EvaluationRequest, result: EvaluationResult) -> EvaluationResult:
    """Applies the mode's clamping and joining rules to an already parsed result."""
    if isinstance(request, BatchTextRequest):
        return join_batch(request, result)
    if isinstance(request, FullSheetImageRequest):
        return normalize_full_sheet(result, request)
    result = normalize_single(result, request.max_marks)
    if isinstance(request, SingleImageRequest):
        result.max_marks = request.max_marks
        if result.extracted_text is None:
            result.extracted_text = ""
    return result
