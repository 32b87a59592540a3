import io
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
from PIL import Image

from clipchain.api.base import (
    BaseGenerationService,
    GenerationRequest,
    OperationHandle,
    RemoteStatus,
)
from clipchain.core.exceptions import MissingArtifactError
from clipchain.utils.media import MediaInfo, MediaProbe
from clipchain.workflow.stitcher import EncodingInvocation, EncodingTool


def png_bytes(size=(64, 36)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 120, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


ScriptItem = Union[RemoteStatus, Exception]


class FakeService(BaseGenerationService):
    """
    Scripted generation service.

    ``scripts`` maps the submission number to the answers of successive
    status checks. Unscripted operations finish on the first check.
    """

    def __init__(
        self,
        name: str = "fake",
        payload: bytes = b"fake-mp4-payload",
        mime_type: str = "video/mp4",
        scripts: Optional[Dict[int, List[ScriptItem]]] = None,
        submit_errors: Optional[Dict[int, Exception]] = None,
        always_pending: bool = False,
        on_submit=None,
    ):
        self._name = name
        self.payload = payload
        self.mime_type = mime_type
        self.scripts = scripts or {}
        self.submit_errors = submit_errors or {}
        self.always_pending = always_pending
        self.on_submit = on_submit
        self.submitted: List[GenerationRequest] = []
        self.fetch_calls = 0
        super().__init__(api_key="test-key", base_url="https://fake.invalid")

    @property
    def service_name(self) -> str:
        return self._name

    @property
    def env_key_name(self) -> str:
        return "FAKE_API_KEY"

    def _get_default_base_url(self) -> str:
        return "https://fake.invalid"

    async def _submit(self, request: GenerationRequest) -> OperationHandle:
        number = len(self.submitted)
        self.submitted.append(request)
        if self.on_submit is not None:
            self.on_submit(number, request)
        if number in self.submit_errors:
            raise self.submit_errors[number]
        return OperationHandle(id=f"{self._name}-op-{number}", service=self._name, kind=request.kind)

    async def _fetch(self, handle: OperationHandle) -> RemoteStatus:
        self.fetch_calls += 1
        if self.always_pending:
            return RemoteStatus(done=False)
        number = int(handle.id.rsplit("-", 1)[1])
        script = self.scripts.get(number)
        if script:
            item = script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return RemoteStatus(done=True, artifact_bytes=self.payload, mime_type=self.mime_type)


class FakeProbe(MediaProbe):
    """Probe that reports configured durations and writes real tiny frames."""

    def __init__(
        self,
        durations: Optional[Dict[str, float]] = None,
        silent: Optional[List[str]] = None,
        default_duration: float = 8.0,
        broken_frames: Optional[List[str]] = None,
    ):
        super().__init__()
        self.durations = durations or {}
        self.silent = set(silent or [])
        self.default_duration = default_duration
        self.broken_frames = set(broken_frames or [])
        self.grabs: List[tuple] = []

    async def probe(self, path) -> MediaInfo:
        path = Path(path)
        if not path.is_file():
            raise MissingArtifactError(f"Media file not found: {path}", artifact_path=str(path))
        return MediaInfo(
            path=str(path),
            duration=self.durations.get(path.name, self.default_duration),
            has_audio=path.name not in self.silent,
            video_codec="h264",
            width=1280,
            height=720,
            pix_fmt="yuv420p",
            profile="High",
        )

    async def grab_frame(self, video_path, timestamp, output_path, quality=95) -> Path:
        self.grabs.append((Path(video_path).name, timestamp))
        if Path(video_path).name in self.broken_frames:
            raise MissingArtifactError(f"No frame at {timestamp:.3f}s", artifact_path=str(video_path))
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", (64, 36), (10, 20, 30)).save(output_path)
        return output_path


class FakeEncodingTool(EncodingTool):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.invocations: List[EncodingInvocation] = []

    async def encode(self, invocation: EncodingInvocation) -> Path:
        self.invocations.append(invocation)
        if self.error is not None:
            raise self.error
        path = Path(invocation.output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"encoded")
        return path


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def tool() -> FakeEncodingTool:
    return FakeEncodingTool()
