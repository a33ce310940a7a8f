import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import google.generativeai as genai
from google.api_core.exceptions import GoogleAPICallError, GoogleAPIError
from google.generativeai.types import HarmBlockThreshold, HarmCategory
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from evaluator.core import config
from evaluator.core.errors import GatewayError
from evaluator.core.schemas import ImagePart, RequestMode

logger = logging.getLogger(__name__)

# Academic answers trip the default filters surprisingly often.
SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
}


@dataclass(frozen=True)
class GenerationProfile:
    temperature: float
    max_output_tokens: Optional[int] = None


def _default_profiles() -> Dict[RequestMode, GenerationProfile]:
    return {
        RequestMode.SINGLE_TEXT: GenerationProfile(temperature=0.4, max_output_tokens=1024),
        RequestMode.BATCH_TEXT: GenerationProfile(temperature=0.4, max_output_tokens=8192),
        RequestMode.SINGLE_IMAGE: GenerationProfile(temperature=0.2, max_output_tokens=8192),
        RequestMode.FULL_SHEET: GenerationProfile(temperature=0.2, max_output_tokens=8192),
    }


@dataclass
class GatewayConfig:
    model_name: str = config.GEMINI_MODEL
    retries: int = config.TEXT_RETRIES
    timeout: float = config.REQUEST_TIMEOUT
    retry_backoff: float = 1.0
    profiles: Dict[RequestMode, GenerationProfile] = field(default_factory=_default_profiles)

    def profile_for(self, mode: RequestMode) -> GenerationProfile:
        return self.profiles[mode]

    def retries_for(self, mode: RequestMode) -> int:
        # Batch and image calls are expensive; only single text answers retry.
        return self.retries if mode == RequestMode.SINGLE_TEXT else 0


def image_blob(part: ImagePart) -> Dict[str, object]:
    try:
        data = base64.b64decode(part.data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise GatewayError(f"Image data is not valid base64: {e}") from e
    return {"mime_type": part.mime_type, "data": data}


class ModelGateway:
    """Sends one prompt (optionally with image pages) to Gemini and returns the raw text."""

    def __init__(self, api_key: str, gateway_config: Optional[GatewayConfig] = None):
        self.config = gateway_config or GatewayConfig()
        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(self.config.model_name)

    async def _call(self, contents: List[object], profile: GenerationProfile) -> str:
        try:
            response = await self._model.generate_content_async(
                contents,
                generation_config=genai.GenerationConfig(
                    temperature=profile.temperature,
                    max_output_tokens=profile.max_output_tokens,
                ),
                safety_settings=SAFETY_SETTINGS,
                request_options={"timeout": self.config.timeout},
            )
        except GoogleAPICallError as e:
            logger.error(f"Gemini API Error ({e.code}): {e.message}")
            raise GatewayError("Gemini API returned an error", status=e.code, body=str(e.message)) from e
        except GoogleAPIError as e:
            # RetryError (SDK deadline exhausted) and other client-side API failures
            logger.error(f"Gemini API Error: {e}")
            raise GatewayError(f"Gemini API call failed: {e}") from e
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Network failure contacting Gemini: {e}")
            raise GatewayError(f"Network failure contacting Gemini: {e}") from e
        except Exception as e:
            logger.error(f"Gemini API Error: {e}")
            raise GatewayError(f"Unexpected failure calling Gemini: {e}") from e

        try:
            return response.text
        except ValueError:
            # Blocked or empty candidates; the parser turns "" into a fallback.
            logger.warning(f"Gemini returned no text. Feedback: {getattr(response, 'prompt_feedback', None)}")
            return ""

    async def generate(
        self,
        prompt: str,
        images: Sequence[ImagePart] = (),
        mode: RequestMode = RequestMode.SINGLE_TEXT,
        retries: Optional[int] = None,
    ) -> str:
        """
        Returns the model's raw completion text.
        Raises GatewayError once the allowed attempts are used up.
        """
        contents: List[object] = [image_blob(part) for part in images]
        contents.append(prompt)
        profile = self.config.profile_for(mode)
        if retries is None:
            retries = self.config.retries_for(mode)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_backoff, max=8),
            retry=retry_if_exception_type(GatewayError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.info(
                    f"Calling {self.config.model_name} ({mode.value}, {len(images)} image(s), "
                    f"attempt {attempt.retry_state.attempt_number}/{retries + 1})"
                )
                return await self._call(contents, profile)
