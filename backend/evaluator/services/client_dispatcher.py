"""
client_dispatcher.py — Caller-facing entry point for evaluations.

Tries the backend first. When the backend is unreachable or answers with an
error, text evaluations can be repeated directly against Gemini with an
operator-supplied key; image evaluations (and backend-only deployments) get a
zero-score result instead. `evaluate` never raises.
"""

import asyncio
import getpass
import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import requests

from evaluator.core import config
from evaluator.core.errors import GatewayError, ResponseShapeError
from evaluator.core.fallbacks import GATEWAY_FEEDBACK, IMAGE_FEEDBACK, NO_ANSWER_FEEDBACK, fallback_result
from evaluator.core.schemas import (
    BatchEntry,
    BatchResult,
    EvaluationRequest,
    EvaluationResult,
    QuestionSpec,
    SingleImageRequest,
    SingleResult,
    SingleTextRequest,
)
from evaluator.services.model_gateway import ModelGateway
from evaluator.services.orchestrator import EvaluationOrchestrator, normalize_result
from evaluator.services.response_parser import ResponseParser, validate_shape

logger = logging.getLogger(__name__)

TEXT_ENDPOINT = "/api/evaluate"
OCR_ENDPOINT = "/api/ocr-evaluate"

NO_KEY_FEEDBACK = "Evaluation service unavailable and no API key was provided for direct grading."

SingleRequest = Union[SingleTextRequest, SingleImageRequest]


class CredentialStore:
    """Operator API key kept in a small JSON file under a fixed key name."""

    def __init__(self, path: Path = config.LOCAL_STORAGE_PATH, key_name: str = config.LOCAL_KEY_NAME):
        self.path = Path(path)
        self.key_name = key_name

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable local storage {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self) -> Optional[str]:
        value = self._load().get(self.key_name)
        return value.strip() if isinstance(value, str) and value.strip() else None

    def set(self, value: str) -> None:
        data = self._load()
        data[self.key_name] = value
        self._save(data)

    def clear(self) -> None:
        data = self._load()
        if data.pop(self.key_name, None) is not None:
            self._save(data)
            logger.info(f"Removed stored '{self.key_name}'")


def prompt_for_api_key() -> str:
    return getpass.getpass("Backend unavailable. Enter a Gemini API key for direct grading (blank to skip): ")


class _KeyCheckingGateway:
    """Purges the stored key when Gemini rejects it."""

    def __init__(self, gateway: ModelGateway, credentials: CredentialStore):
        self.gateway = gateway
        self.credentials = credentials

    async def generate(self, *args, **kwargs) -> str:
        try:
            return await self.gateway.generate(*args, **kwargs)
        except GatewayError as e:
            if e.is_invalid_key:
                logger.warning("Gemini rejected the stored API key; clearing it.")
                self.credentials.clear()
            raise


class ClientDispatcher:
    def __init__(
        self,
        base_url: str = config.BACKEND_URL,
        *,
        backend_only: bool = config.BACKEND_ONLY,
        credentials: Optional[CredentialStore] = None,
        ask_for_key: Optional[Callable[[], str]] = prompt_for_api_key,
        gateway_factory: Callable[[str], ModelGateway] = ModelGateway,
        session: Optional[requests.Session] = None,
        timeout: float = config.REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.backend_only = backend_only
        self.credentials = credentials or CredentialStore()
        self.ask_for_key = ask_for_key
        self.gateway_factory = gateway_factory
        self.session = session or requests.Session()
        self.timeout = timeout
        self._key_lock = asyncio.Lock()

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        try:
            return await self._post(request)
        except GatewayError as e:
            logger.warning(f"Backend unavailable ({e}). Switching to fallback.")
            try:
                return await self._fallback(request, e)
            except Exception as inner:
                logger.exception(f"Fallback evaluation failed: {inner}")
                return self._safe_result(request, str(inner))
        except Exception as e:
            logger.exception(f"Unexpected error while evaluating: {e}")
            return self._safe_result(request, str(e))

    async def evaluate_each(self, requests_by_id: Mapping[str, SingleRequest]) -> Dict[str, SingleResult]:
        """Evaluates independent single-answer requests concurrently, keyed by question id."""
        ids = list(requests_by_id)
        results = await asyncio.gather(*(self.evaluate(requests_by_id[qid]) for qid in ids))
        return dict(zip(ids, results))

    async def evaluate_questions(self, questions: Sequence[QuestionSpec], answers: Mapping[str, str]) -> BatchResult:
        """
        Grades each answered question with its own single-text request, all
        in flight at once, and joins the results back in question order.
        """
        pending = {
            q.id: SingleTextRequest(
                question=q.text,
                model_answer=q.model_answer,
                student_answer=answers[q.id],
                max_marks=q.marks,
            )
            for q in questions
            if (answers.get(q.id) or "").strip()
        }
        results = await self.evaluate_each(pending)

        joined: List[BatchEntry] = []
        for q in questions:
            result = results.get(q.id)
            if result is None:
                joined.append(BatchEntry(question_id=q.id, score=0, improvements=[], feedback=NO_ANSWER_FEEDBACK))
            else:
                joined.append(BatchEntry(
                    question_id=q.id,
                    score=result.score,
                    improvements=result.improvements,
                    feedback=result.feedback,
                ))
        return joined

    # --- Backend ---

    def _url(self, request: EvaluationRequest) -> str:
        return self.base_url + (OCR_ENDPOINT if request.mode.is_image else TEXT_ENDPOINT)

    async def _post(self, request: EvaluationRequest) -> EvaluationResult:
        url = self._url(request)
        logger.info(f"Attempting {request.mode.value} evaluation via backend {url}")
        try:
            response = await asyncio.to_thread(
                self.session.post, url, json=request.to_payload(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise GatewayError(f"Network error contacting backend: {e}") from e

        if not response.ok:
            raise GatewayError(self._describe_error(response), status=response.status_code, body=response.text)

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError("Backend returned a non-JSON body", status=response.status_code,
                               body=response.text) from e

        try:
            result = validate_shape(body, request, raw_text=response.text)
        except ResponseShapeError as e:
            logger.error(f"Backend result has an unexpected shape: {e.message}")
            return ResponseParser().fallback(request, e)
        return normalize_result(request, result)

    @staticmethod
    def _describe_error(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"Backend Error {response.status_code}: {response.reason}"
        if not isinstance(data, dict):
            return f"Backend Error {response.status_code}"
        message = data.get("error") or f"Backend Error {response.status_code}"
        details = data.get("details")
        return f"{message}: {details}" if details else str(message)

    # --- Fallback ---

    def _safe_result(self, request: EvaluationRequest, reason: str) -> EvaluationResult:
        feedback = IMAGE_FEEDBACK if request.mode.is_image else GATEWAY_FEEDBACK
        return fallback_result(request, feedback=feedback, improvements=[f"Evaluation failed: {reason}"])

    async def _fallback(self, request: EvaluationRequest, error: GatewayError) -> EvaluationResult:
        if self.backend_only or request.mode.is_image:
            logger.error("Client-side fallback is disabled for this request.")
            return self._safe_result(request, str(error))

        key = await self._operator_key()
        if not key:
            return fallback_result(request, feedback=NO_KEY_FEEDBACK, improvements=[f"Evaluation failed: {error}"])

        logger.info("Falling back to client-side Gemini call...")
        gateway = _KeyCheckingGateway(self.gateway_factory(key), self.credentials)
        return await EvaluationOrchestrator(gateway).evaluate(request)

    async def _operator_key(self) -> Optional[str]:
        # Concurrent fan-out requests share one prompt.
        async with self._key_lock:
            key = self.credentials.get()
            if key or self.ask_for_key is None:
                return key
            key = (await asyncio.to_thread(self.ask_for_key) or "").strip()
            if key:
                self.credentials.set(key)
            return key or None
