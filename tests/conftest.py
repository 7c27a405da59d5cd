"""pytest 공용 fixture.

엔진 테스트는 가짜 협력자(FakeStorage, FakeProcessor, FakeArchive, FakeDam)로
조립한 Workflow를 쓴다. 코루틴은 각 테스트 안에서 asyncio.run으로 돌린다.
API 테스트는 tmp_path 아래의 로컬 디스크 협력자로 만든 Workflow를
app.state에 미리 넣어 두고 TestClient로 호출한다.
"""

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

# src/ 디렉토리를 import path에 추가
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from core.config import Settings
from core.exceptions import TransientError
from main import app
from processor.local_backend import (
    LocalStorage,
    PillowProcessor,
    ZipArchiveBuilder,
    filesystem_dam_factory,
)
from service.upload_service import RawImage
from service.workflow import Workflow


class FakeStorage:
    """ref는 "orig/<파일명>". fail에 파일명을 넣으면 그 파일 저장이 실패하고, hang에 넣으면 응답하지 않는다."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.fail: dict[str, Exception] = {}
        self.hang: set[str] = set()

    async def put_original(self, data: bytes, filename: str | None = None) -> str:
        if filename in self.hang:
            await asyncio.sleep(60)
        if filename in self.fail:
            raise self.fail[filename]
        ref = f"orig/{filename}"
        self.blobs[ref] = data
        return ref

    async def get(self, ref: str) -> bytes:
        return self.blobs[ref]


class FakeProcessor:
    """결과 ref는 "<입력 ref>><종류><호출 횟수>".

    - failures[ref]: 호출마다 앞에서부터 하나씩 꺼내 던질 예외 목록
    - hang: 이 ref는 응답하지 않는다 (타임아웃 테스트)
    - gate: 설정하면 풀릴 때까지 모든 호출이 대기한다
    - gates[ref]: 이 ref 호출만 풀릴 때까지 대기한다
    - results[ref]: 정상 결과 대신 이 값을 그대로 돌려준다
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.failures: dict[str, list[Exception]] = {}
        self.hang: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.gates: dict[str, asyncio.Event] = {}
        self.results: dict[str, object] = {}
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def _call(self, kind: str, ref: str) -> str:
        self.calls.append((kind, ref))
        count = sum(1 for k, r in self.calls if k == kind and r == ref)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if ref in self.gates:
                await self.gates[ref].wait()
            if ref in self.hang:
                await asyncio.sleep(60)
            if self.delay:
                await asyncio.sleep(self.delay)
            queue = self.failures.get(ref)
            if queue:
                raise queue.pop(0)
        finally:
            self.active -= 1
        if ref in self.results:
            return self.results[ref]
        return f"{ref}>{kind}{count}"

    async def process(self, original_ref: str, instructions: str) -> str:
        return await self._call("process", original_ref)

    async def retouch(self, processed_ref: str, instruction: str) -> str:
        return await self._call("retouch", processed_ref)

    def call_count(self, kind: str, ref: str) -> int:
        return sum(1 for k, r in self.calls if k == kind and r == ref)


class FakeArchive:
    def __init__(self):
        self.builds: list[tuple[list[str], str | None]] = []
        self.delay = 0.0

    async def build(self, refs: list[str], summary: str | None) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.builds.append((list(refs), summary))
        return f"archive-{len(self.builds)}.zip"


class FakeDam:
    """DamClientFactory 겸 DamClient. failing에 넣은 processed_ref는 전송이 실패한다."""

    def __init__(self):
        self.connections = []
        self.uploads: list[tuple[str, str, dict]] = []
        self.failing: set[str] = set()

    def __call__(self, connection):
        self.connections.append(connection)
        return self

    async def upload(self, ref: str, target_path: str, metadata: dict) -> str:
        await asyncio.sleep(0)
        if ref in self.failing:
            raise TransientError("DAM 서버 응답 없음 (503)")
        self.uploads.append((ref, target_path, metadata))
        return f"dam://test{target_path}"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        UPLOAD_DIR=str(tmp_path / "uploads"),
        OUTPUT_DIR=str(tmp_path / "outputs"),
        DAM_ROOT=str(tmp_path / "dam"),
        PROCESSING_POOL_SIZE=2,
        MAX_ATTEMPTS=3,
        BACKOFF_BASE_SECONDS=0.01,
        BACKOFF_MAX_SECONDS=0.05,
        PROCESS_TIMEOUT_SECONDS=1.0,
        RETOUCH_TIMEOUT_SECONDS=1.0,
        EXPORT_TIMEOUT_SECONDS=1.0,
        PROGRESS_INTERVAL_SECONDS=0.01,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def raw_images(*names: str) -> list[RawImage]:
    return [RawImage(filename=name, data=f"bytes-of-{name}".encode()) for name in names]


@pytest.fixture()
def raw():
    """파일명 목록으로 RawImage 목록을 만드는 함수."""
    return raw_images


@pytest.fixture()
def test_settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture()
def fakes():
    return SimpleNamespace(
        storage=FakeStorage(),
        processor=FakeProcessor(),
        archive=FakeArchive(),
        dam=FakeDam(),
    )


@pytest.fixture()
def workflow(fakes, test_settings):
    """가짜 협력자로 조립한 Workflow."""
    return Workflow(
        storage=fakes.storage,
        processor=fakes.processor,
        archive_builder=fakes.archive,
        dam_client_factory=fakes.dam,
        settings=test_settings,
    )


@pytest.fixture()
def client(tmp_path, test_settings):
    """로컬 디스크 협력자(Pillow 처리기 포함)로 조립한 Workflow를 쓰는 TestClient."""
    storage = LocalStorage(test_settings.UPLOAD_DIR)
    processor = PillowProcessor(storage, workers=2)
    archives = ZipArchiveBuilder(storage, test_settings.OUTPUT_DIR)
    app.state.workflow = Workflow(
        storage=storage,
        processor=processor,
        archive_builder=archives,
        dam_client_factory=filesystem_dam_factory(test_settings.DAM_ROOT, storage),
        settings=test_settings,
    )
    app.state.archives = archives
    with TestClient(app) as c:
        yield c
    processor.close()
    app.state.workflow = None
    app.state.archives = None
