import io
import json
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from maestro.models.schemas import GenerationResult, ImageResult, MediaAsset, RemoteRef
from maestro.services.llm_client import GenerationClient, ObjectStore, UploadFailure
from maestro.services.session import ConversationSession
from maestro.services.storage import Storage

PAIR_ID = "es-ES__en-US"
AUX_MODEL = "aux-model"

TUTOR_REPLY = "Hola, ¿qué tal?\n[EN] Hello, how are you?\n¿Qué comiste hoy?\n[EN] What did you eat today?"
SUGGESTIONS_REPLY = json.dumps(
    {
        "suggestions": [
            {"target": "Comí paella", "native": "I ate paella"},
            {"target": "Nada todavía", "native": "Nothing yet"},
        ],
        "reengagementSeconds": 30,
        "chatSummary": "Learner talked about lunch.",
    }
)


def png_bytes(size=(1200, 900), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def png_asset(size=(1200, 900), color=(200, 30, 30)) -> MediaAsset:
    return MediaAsset.from_bytes(png_bytes(size, color), "image/png")


def default_handler(call: Dict[str, Any]) -> str:
    if call["model"] == AUX_MODEL:
        if call["prompt"].startswith("Translate"):
            return "Translated text"
        options = call["response_options"] or {}
        if options.get("response_mime_type") == "application/json":
            return SUGGESTIONS_REPLY
        return "Merged profile: likes food."
    return TUTOR_REPLY


class FakeGenerationClient(GenerationClient):
    aux_model = AUX_MODEL

    def __init__(
        self,
        handler: Optional[Callable[[Dict[str, Any]], str]] = None,
        image_handler: Optional[Callable[[Dict[str, Any]], ImageResult]] = None,
    ):
        self.handler = handler or default_handler
        self.image_handler = image_handler or (
            lambda call: ImageResult(data=png_bytes((64, 64)), mime_type="image/png")
        )
        self.calls: List[Dict[str, Any]] = []
        self.image_calls: List[Dict[str, Any]] = []

    def calls_for(self, model: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["model"] == model]

    async def generate(
        self,
        model,
        prompt,
        window=None,
        system_instruction=None,
        attachment=None,
        search_enabled=False,
        response_options=None,
    ):
        call = {
            "model": model,
            "prompt": prompt,
            "window": window,
            "system_instruction": system_instruction,
            "attachment": attachment,
            "search_enabled": search_enabled,
            "response_options": response_options,
        }
        self.calls.append(call)
        return GenerationResult(text=self.handler(call))

    async def generate_image(self, window, prompt, system_instruction=None, avatar_ref=None):
        call = {
            "window": window,
            "prompt": prompt,
            "system_instruction": system_instruction,
            "avatar_ref": avatar_ref,
        }
        self.image_calls.append(call)
        return self.image_handler(call)


class FakeObjectStore(ObjectStore):
    def __init__(self, fail_uploads: bool = False, fail_checks: bool = False):
        self.fail_uploads = fail_uploads
        self.fail_checks = fail_checks
        self.live: Dict[str, bool] = {}
        self.uploads: List[str] = []
        self.checks: List[List[str]] = []
        self.deleted: List[str] = []

    async def upload(self, data: bytes, mime_type: str, label: str) -> RemoteRef:
        if self.fail_uploads:
            raise UploadFailure("upload rejected")
        self.uploads.append(label)
        name = f"files/f{len(self.uploads)}"
        uri = f"https://store.test/v1beta/{name}"
        self.live[uri] = True
        return RemoteRef(uri=uri, mime_type=mime_type, name=name)

    async def check_live(self, refs: List[RemoteRef]) -> Dict[str, bool]:
        self.checks.append([ref.uri for ref in refs])
        if self.fail_checks:
            raise UploadFailure("files.get timed out")
        return {ref.uri: self.live.get(ref.uri, False) for ref in refs}

    async def delete(self, ref: RemoteRef) -> bool:
        self.deleted.append(ref.uri)
        return self.live.pop(ref.uri, None) is not None

    def expire_all(self) -> None:
        for uri in self.live:
            self.live[uri] = False


async def no_sleep(seconds: float) -> None:
    return None


def make_session(tmp_path, client=None, object_store=None) -> ConversationSession:
    return ConversationSession(
        PAIR_ID,
        storage=Storage(base_dir=str(tmp_path)),
        client=client or FakeGenerationClient(),
        object_store=object_store or FakeObjectStore(),
    )
