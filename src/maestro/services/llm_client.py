"""Generation service and remote object store clients backed by the Gemini API."""

import asyncio
import io
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import settings
from ..models.schemas import GenerationResult, GroundingRef, ImageResult, RemoteRef
from .history_window import HistoryWindow

logger = logging.getLogger(__name__)

_FILE_NAME_PATTERN = re.compile(r"/files/([^?\s/]+)")


class ApiFailure(Exception):
    """Custom exception for rejected generation service calls."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class UploadFailure(Exception):
    """Custom exception for object store uploads that were rejected or timed out."""
    pass


def normalize_mime_type(mime_type: str) -> str:
    """Drop codec parameters (``audio/webm;codecs=opus`` -> ``audio/webm``)."""
    return (mime_type or "application/octet-stream").split(";", 1)[0].strip().lower()


def file_name_from_uri(uri: str) -> Optional[str]:
    """Extract the ``files/<id>`` resource name from a file URI."""
    if uri.startswith("files/"):
        return uri
    match = _FILE_NAME_PATTERN.search(uri or "")
    return f"files/{match.group(1)}" if match else None


def to_api_failure(error: Exception) -> ApiFailure:
    """Map provider and transport errors onto ApiFailure."""
    if isinstance(error, ApiFailure):
        return error
    if isinstance(error, genai_errors.APIError):
        return ApiFailure(error.message or str(error), status=error.code, code=error.status)
    if isinstance(error, httpx.TimeoutException):
        return ApiFailure(f"Request timed out: {error}", status=504, code="TIMEOUT")
    if isinstance(error, httpx.HTTPError):
        return ApiFailure(f"Network error: {error}", status=None, code="NETWORK_ERROR")
    return ApiFailure(str(error) or error.__class__.__name__, status=500)


class GenerationClient(ABC):
    """Abstract base class for text and image generation."""

    aux_model: str = ""

    @abstractmethod
    async def generate(
        self,
        model: str,
        prompt: str,
        window: Optional[HistoryWindow] = None,
        system_instruction: Optional[str] = None,
        attachment: Optional[RemoteRef] = None,
        search_enabled: bool = False,
        response_options: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """
        Generate a text reply.

        Args:
            model: Model name
            prompt: Current user prompt text
            window: History window sent before the prompt
            system_instruction: Optional system instruction
            attachment: Optional remote reference sent with the prompt
            search_enabled: Enable search grounding
            response_options: Extra generation config (response_mime_type, temperature)

        Returns:
            GenerationResult with text and grounding references

        Raises:
            ApiFailure: If the call is rejected
        """
        pass

    @abstractmethod
    async def generate_image(
        self,
        window: HistoryWindow,
        prompt: str,
        system_instruction: Optional[str] = None,
        avatar_ref: Optional[RemoteRef] = None,
    ) -> ImageResult:
        """Generate an illustrative image; errors are returned, not raised."""
        pass

    async def translate_text(self, text: str, source_lang: str, target_lang: str) -> str:
        """Translate text with the auxiliary model."""
        prompt = (
            f"Translate the following text from {source_lang} to {target_lang}. "
            f"Return ONLY the translation. Text: \"{text}\""
        )
        result = await self.generate(self.aux_model, prompt, response_options={"temperature": 0.1})
        translated = result.text.strip()
        if not translated:
            raise ApiFailure("Empty translation", code="EMPTY_RESPONSE")
        return translated


class ObjectStore(ABC):
    """Abstract base class for the remote media store."""

    @abstractmethod
    async def upload(self, data: bytes, mime_type: str, label: str) -> RemoteRef:
        """Upload bytes; raises UploadFailure."""
        pass

    @abstractmethod
    async def check_live(self, refs: List[RemoteRef]) -> Dict[str, bool]:
        """Liveness of each reference, keyed by URI."""
        pass

    @abstractmethod
    async def delete(self, ref: RemoteRef) -> bool:
        """Delete a stored object; returns whether it existed."""
        pass


class GeminiClient(GenerationClient, ObjectStore):
    """Gemini API client for generation and the Files API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: Optional[str] = None,
        aux_model: Optional[str] = None,
        image_model: Optional[str] = None,
        poll_interval: Optional[float] = None,
        poll_max_attempts: Optional[int] = None,
        client: Optional[genai.Client] = None,
    ):
        api_key = api_key if api_key is not None else settings.gemini_api_key
        if client is None and not (api_key or "").strip():
            raise ApiFailure("Gemini API key is not configured", code="MISSING_API_KEY")
        self._client = client or genai.Client(api_key=api_key)
        self.text_model = text_model or settings.text_model
        self.aux_model = aux_model or settings.aux_model
        self.image_model = image_model or settings.image_model
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.upload_poll_interval_seconds
        )
        self.poll_max_attempts = poll_max_attempts or settings.upload_poll_max_attempts

    @staticmethod
    def _build_contents(
        window: Optional[HistoryWindow],
        prompt: Optional[str],
        attachment: Optional[RemoteRef] = None,
        extra_refs: Optional[List[RemoteRef]] = None,
    ) -> List[types.Content]:
        contents = []
        for item in window.to_turns() if window else []:
            parts = []
            if item.text:
                parts.append(types.Part.from_text(text=item.text))
            if item.remote_ref:
                parts.append(
                    types.Part.from_uri(
                        file_uri=item.remote_ref.uri, mime_type=item.remote_ref.mime_type
                    )
                )
            if parts:
                role = "model" if item.role == "assistant" else "user"
                contents.append(types.Content(role=role, parts=parts))

        prompt_parts = []
        if prompt:
            prompt_parts.append(types.Part.from_text(text=prompt))
        for ref in [attachment] + list(extra_refs or []):
            if ref:
                prompt_parts.append(types.Part.from_uri(file_uri=ref.uri, mime_type=ref.mime_type))
        if prompt_parts:
            contents.append(types.Content(role="user", parts=prompt_parts))
        return contents

    @staticmethod
    def _grounding_refs(response: Any) -> List[GroundingRef]:
        refs = []
        candidates = getattr(response, "candidates", None) or []
        metadata = getattr(candidates[0], "grounding_metadata", None) if candidates else None
        for chunk in getattr(metadata, "grounding_chunks", None) or []:
            web = getattr(chunk, "web", None)
            if web and getattr(web, "uri", None):
                refs.append(GroundingRef(uri=web.uri, title=getattr(web, "title", None)))
        return refs

    async def generate(
        self,
        model: str,
        prompt: str,
        window: Optional[HistoryWindow] = None,
        system_instruction: Optional[str] = None,
        attachment: Optional[RemoteRef] = None,
        search_enabled: bool = False,
        response_options: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """Generate text using the Gemini API."""
        config_kwargs: Dict[str, Any] = dict(response_options or {})
        if system_instruction:
            config_kwargs["system_instruction"] = system_instruction
        if search_enabled:
            config_kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]

        try:
            response = await self._client.aio.models.generate_content(
                model=model or self.text_model,
                contents=self._build_contents(window, prompt, attachment),
                config=types.GenerateContentConfig(**config_kwargs),
            )
        except Exception as e:
            failure = to_api_failure(e)
            logger.error(f"Generation failed (status={failure.status}, code={failure.code}): {failure}")
            raise failure

        return GenerationResult(
            text=response.text or "",
            grounding_refs=self._grounding_refs(response),
        )

    async def generate_image(
        self,
        window: HistoryWindow,
        prompt: str,
        system_instruction: Optional[str] = None,
        avatar_ref: Optional[RemoteRef] = None,
    ) -> ImageResult:
        """Generate an image; only image output is requested."""
        config_kwargs: Dict[str, Any] = {"response_modalities": ["IMAGE"]}
        if system_instruction:
            config_kwargs["system_instruction"] = system_instruction

        try:
            response = await self._client.aio.models.generate_content(
                model=self.image_model,
                contents=self._build_contents(window, prompt, extra_refs=[avatar_ref]),
                config=types.GenerateContentConfig(**config_kwargs),
            )
        except Exception as e:
            failure = to_api_failure(e)
            logger.warning(f"Image generation failed: {failure}")
            return ImageResult(error=failure.message)

        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                if inline and inline.data:
                    return ImageResult(data=inline.data, mime_type=inline.mime_type or "image/png")
        return ImageResult(error="No image data in response")

    async def _wait_until_active(self, file: types.File) -> types.File:
        for _ in range(self.poll_max_attempts):
            state = str(getattr(file.state, "name", file.state) or "")
            if state.endswith("ACTIVE"):
                return file
            if state.endswith("FAILED"):
                raise UploadFailure(f"File processing failed: {file.name}")
            await asyncio.sleep(self.poll_interval)
            file = await self._client.aio.files.get(name=file.name)
        raise UploadFailure(f"File did not become active in time: {file.name}")

    async def upload(self, data: bytes, mime_type: str, label: str) -> RemoteRef:
        """Upload bytes to the Files API and wait until they are usable."""
        mime_type = normalize_mime_type(mime_type)
        try:
            uploaded = await self._client.aio.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=label),
            )
            uploaded = await self._wait_until_active(uploaded)
        except UploadFailure:
            raise
        except Exception as e:
            raise UploadFailure(f"Upload of {label} failed: {to_api_failure(e)}") from e

        logger.info(f"Uploaded {label} as {uploaded.name}")
        return RemoteRef(
            uri=uploaded.uri,
            mime_type=uploaded.mime_type or mime_type,
            name=uploaded.name,
        )

    async def _is_live(self, ref: RemoteRef) -> bool:
        name = ref.name or file_name_from_uri(ref.uri)
        if not name:
            return False
        try:
            file = await self._client.aio.files.get(name=name)
        except genai_errors.APIError as e:
            if e.code != 404:
                logger.warning(f"Liveness check for {name} failed: {e}")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Liveness check for {name} failed: {e}")
            return False
        return str(getattr(file.state, "name", file.state) or "").endswith("ACTIVE")

    async def check_live(self, refs: List[RemoteRef]) -> Dict[str, bool]:
        unique = list({ref.uri: ref for ref in refs}.values())
        results = await asyncio.gather(*(self._is_live(ref) for ref in unique))
        return {ref.uri: live for ref, live in zip(unique, results)}

    async def delete(self, ref: RemoteRef) -> bool:
        name = ref.name or file_name_from_uri(ref.uri)
        if not name:
            return False
        try:
            await self._client.aio.files.delete(name=name)
        except genai_errors.APIError as e:
            if e.code == 404:
                return False
            raise UploadFailure(f"Delete of {name} failed: {e}") from e
        logger.info(f"Deleted remote file {name}")
        return True


def get_llm_client() -> GeminiClient:
    """
    Get the configured generation client.

    Returns:
        GeminiClient instance

    Raises:
        ApiFailure: If no API key is configured
    """
    return GeminiClient(api_key=settings.gemini_api_key)
