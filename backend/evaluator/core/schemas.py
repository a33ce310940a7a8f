"""
schemas.py — Request and result models for the evaluation pipeline.

Attributes are snake_case; the wire format is camelCase (the browser client
sends and reads camelCase keys), so every model carries camelCase aliases.
"""

import math
import re
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from evaluator.core.config import DEFAULT_MAX_MARKS, DEFAULT_MODEL_ANSWER
from evaluator.core.errors import RequestValidationError

SINGLE_IMAGE_DEFAULT_QUESTION = "Not specified. Please evaluate the answer in the image."
NO_FEEDBACK = "No feedback provided."

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,", re.IGNORECASE)


class RequestMode(str, Enum):
    SINGLE_TEXT = "single-text"
    BATCH_TEXT = "batch-text"
    SINGLE_IMAGE = "single-image"
    FULL_SHEET = "full-sheet"

    @property
    def is_image(self) -> bool:
        return self in (RequestMode.SINGLE_IMAGE, RequestMode.FULL_SHEET)


def coerce_marks(value: Any, default: int = DEFAULT_MAX_MARKS) -> int:
    """Positive integer marks; anything absent or invalid becomes the default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    marks = int(round(number))
    return marks if marks > 0 else default


def _model_answer_or_default(value: Any) -> str:
    text = "" if value is None else str(value).strip()
    return text or DEFAULT_MODEL_ANSWER


def _id_text(value: Any) -> Any:
    return str(value).strip() if value is not None else value


def _text_or_empty(value: Any) -> str:
    return "" if value is None else str(value)


def _feedback_text(value: Any) -> str:
    text = "" if value is None else str(value).strip()
    return text or NO_FEEDBACK


def _improvement_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    raise ValueError("improvements must be a list of strings")


Marks = Annotated[int, BeforeValidator(coerce_marks)]
ModelAnswer = Annotated[str, BeforeValidator(_model_answer_or_default)]
QuestionId = Annotated[str, BeforeValidator(_id_text)]
Improvements = Annotated[List[str], BeforeValidator(_improvement_list)]
Feedback = Annotated[str, BeforeValidator(_feedback_text)]
LooseText = Annotated[str, BeforeValidator(_text_or_empty)]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Requests ---

class ImagePart(CamelModel):
    data: str
    mime_type: str = "image/jpeg"

    @field_validator("data", mode="before")
    @classmethod
    def _require_data(cls, value):
        if not isinstance(value, str) or not value.strip():
            raise ValueError("image data must be a non-empty base64 string")
        return value.strip()

    @field_validator("mime_type", mode="before")
    @classmethod
    def _default_mime(cls, value):
        return value or "image/jpeg"

    @model_validator(mode="after")
    def _strip_data_url(self):
        # Browsers hand over data URLs; keep only the base64 body.
        match = _DATA_URL.match(self.data)
        if match:
            self.mime_type = match.group("mime")
            self.data = self.data[match.end():]
        return self


class QuestionSpec(CamelModel):
    id: QuestionId
    text: str
    model_answer: ModelAnswer = DEFAULT_MODEL_ANSWER
    marks: Marks = DEFAULT_MAX_MARKS


class SingleTextRequest(CamelModel):
    mode: ClassVar[RequestMode] = RequestMode.SINGLE_TEXT

    question: str
    model_answer: ModelAnswer = DEFAULT_MODEL_ANSWER
    student_answer: str
    max_marks: Marks = DEFAULT_MAX_MARKS


class BatchTextRequest(CamelModel):
    mode: ClassVar[RequestMode] = RequestMode.BATCH_TEXT

    questions: List[QuestionSpec]
    answers: Dict[str, str] = {}

    @field_validator("answers", mode="before")
    @classmethod
    def _answers_as_text(cls, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("answers must be an object keyed by question id")
        return {str(k): "" if v is None else str(v) for k, v in value.items()}

    def answer_for(self, question_id: str) -> str:
        return self.answers.get(question_id, "").strip()


class SingleImageRequest(CamelModel):
    mode: ClassVar[RequestMode] = RequestMode.SINGLE_IMAGE

    images: List[ImagePart]
    question: str = SINGLE_IMAGE_DEFAULT_QUESTION
    model_answer: ModelAnswer = DEFAULT_MODEL_ANSWER
    max_marks: Marks = DEFAULT_MAX_MARKS

    @field_validator("question", mode="before")
    @classmethod
    def _default_question(cls, value):
        text = "" if value is None else str(value).strip()
        return text or SINGLE_IMAGE_DEFAULT_QUESTION

    def to_payload(self) -> Dict[str, Any]:
        return {"mode": "single", **super().to_payload()}


class FullSheetImageRequest(CamelModel):
    mode: ClassVar[RequestMode] = RequestMode.FULL_SHEET

    images: List[ImagePart]
    questions: List[QuestionSpec]

    def to_payload(self) -> Dict[str, Any]:
        return {"mode": "full-sheet", **super().to_payload()}


EvaluationRequest = Union[SingleTextRequest, BatchTextRequest, SingleImageRequest, FullSheetImageRequest]


# --- Results ---

class _ScoredModel(CamelModel):
    score: float
    improvements: Improvements = []
    feedback: Feedback = NO_FEEDBACK

    @field_validator("score")
    @classmethod
    def _finite_score(cls, value):
        if not math.isfinite(value):
            raise ValueError("score must be a finite number")
        return value


class SingleResult(_ScoredModel):
    extracted_text: Optional[str] = None
    is_relevant: Optional[bool] = None
    max_marks: Optional[float] = None


class BatchEntry(_ScoredModel):
    question_id: QuestionId


class FullSheetEntry(_ScoredModel):
    question_id: QuestionId
    question_number: int = 0
    extracted_answer: LooseText = ""
    is_relevant: Optional[bool] = None
    max_marks: float = 0

    @field_validator("question_number", mode="before")
    @classmethod
    def _number(cls, value):
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0


class FullSheetResult(CamelModel):
    extracted_text: LooseText = ""
    results: List[FullSheetEntry]
    total_score: float = 0
    total_max_marks: float = 0
    overall_feedback: LooseText = ""

    @field_validator("total_score", "total_max_marks", mode="before")
    @classmethod
    def _totals(cls, value):
        # Totals are recomputed downstream; unusable values are not a shape error.
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0
        return number if math.isfinite(number) else 0


BatchResult = List[BatchEntry]
EvaluationResult = Union[SingleResult, BatchResult, FullSheetResult]


def dump_result(result: EvaluationResult) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
    if isinstance(result, list):
        return [entry.to_payload() for entry in result]
    return result.to_payload()


# --- Request validation ---

def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(part) for part in err.get("loc", ()))
    return f"Invalid field '{where}': {err.get('msg')}" if where else str(err.get("msg"))


def _parse_questions(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise RequestValidationError("No questions provided. Send a non-empty 'questions' list.")
    questions = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or not str(item.get("text") or "").strip():
            raise RequestValidationError(f"Question {index + 1} is missing its text.")
        question = dict(item)
        if question.get("id") is None or not str(question["id"]).strip():
            question["id"] = f"q{index + 1}"
        questions.append(question)
    return questions


def _parse_images(payload: Dict[str, Any]) -> List[Any]:
    images = payload.get("images")
    if not images and payload.get("image"):
        images = [{"data": payload["image"], "mimeType": payload.get("mimeType") or "image/jpeg"}]
    if not isinstance(images, list) or not images:
        raise RequestValidationError("No image provided. Send base64 image data.")
    return [{"data": item} if isinstance(item, str) else item for item in images]


def build_request(payload: Any, ocr: bool = False) -> EvaluationRequest:
    """
    Turns a decoded JSON body into a typed request.
    Raises RequestValidationError for anything the caller has to fix.
    """
    if not isinstance(payload, dict):
        raise RequestValidationError("Invalid JSON body")

    try:
        if ocr:
            images = _parse_images(payload)
            mode = payload.get("mode") or "single"
            if mode == "full-sheet":
                return FullSheetImageRequest.model_validate(
                    {"images": images, "questions": _parse_questions(payload.get("questions"))}
                )
            if mode != "single":
                raise RequestValidationError(f"Unknown mode '{mode}'. Use 'single' or 'full-sheet'.")
            return SingleImageRequest.model_validate({**payload, "images": images})

        if "questions" in payload:
            return BatchTextRequest.model_validate(
                {"questions": _parse_questions(payload.get("questions")), "answers": payload.get("answers")}
            )

        missing = [name for name in ("question", "studentAnswer") if not str(payload.get(name) or "").strip()]
        if missing:
            raise RequestValidationError(f"Missing required fields: {', '.join(missing)}")
        return SingleTextRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError(_first_error(exc)) from exc
