import json
import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, Request

from evaluator.core import config
from evaluator.core.errors import RequestValidationError
from evaluator.core.schemas import build_request, dump_result
from evaluator.services.model_gateway import ModelGateway
from evaluator.services.orchestrator import EvaluationOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def gateway_for(api_key: str) -> ModelGateway:
    # genai.configure is process-global: reconfigure only when the key changes.
    return ModelGateway(api_key)


def get_orchestrator() -> EvaluationOrchestrator:
    # Runs before the body is read: a missing key fails with no model call.
    api_key = config.resolve_api_key()
    return EvaluationOrchestrator(gateway_for(api_key))


async def read_json(request: Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Rejected request body: {e}")
        raise RequestValidationError("Invalid JSON body") from e


# --- ROUTES ---

@router.post("/api/evaluate")
async def evaluate(request: Request, orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    payload = await read_json(request)
    evaluation = build_request(payload)
    logger.info(f"[EVALUATE] {evaluation.mode.value} request received")
    result = await orchestrator.evaluate(evaluation)
    return dump_result(result)


@router.post("/api/ocr-evaluate")
async def ocr_evaluate(request: Request, orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    payload = await read_json(request)
    evaluation = build_request(payload, ocr=True)
    logger.info(f"[OCR] {evaluation.mode.value} request with {len(evaluation.images)} page(s)")
    result = await orchestrator.evaluate(evaluation)
    return dump_result(result)
