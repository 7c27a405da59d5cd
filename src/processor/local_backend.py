"""로컬 디스크 기반 협력자 구현.

외부 서비스 없이 서버를 끝까지 돌려보기 위한 구현체들이다.
- LocalStorage: 업로드 원본과 처리 결과를 디렉토리에 저장
- PillowProcessor: operations.plan()으로 지시문을 Pillow 연산으로 바꿔 적용
- ZipArchiveBuilder: 처리 결과 + 요약문을 ZIP 하나로 묶음
- FilesystemDamClient: DAM 대신 로컬 폴더에 경로 그대로 복사 + 메타데이터 JSON

Pillow 연산은 CPU-bound라 이벤트 루프를 막지 않도록 run_in_executor로 스레드풀에 넘긴다.
"""

import asyncio
import io
import json
import os
import uuid
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from loguru import logger
from PIL import Image, UnidentifiedImageError

from core.exceptions import PermanentError, TransientError
from model.export import DamConnection
from processor import operations


class LocalStorage:
    """ref는 "<kind>/<파일명>" 형식의 상대 경로다."""

    def __init__(self, upload_dir: str):
        self.root = Path(upload_dir)

    def path_for(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise PermanentError(f"잘못된 저장소 참조: {ref}")
        return path

    async def _write(self, kind: str, data: bytes, ext: str) -> str:
        ref = f"{kind}/{uuid.uuid4().hex}{ext}"
        path = self.path_for(ref)

        def write() -> None:
            os.makedirs(path.parent, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise TransientError(f"파일 저장 실패: {e}")
        return ref

    async def put_original(self, data: bytes, filename: str | None = None) -> str:
        ext = os.path.splitext(filename or "image.jpg")[1].lower() or ".jpg"
        return await self._write("originals", data, ext)

    async def put_processed(self, data: bytes, ext: str = ".jpg") -> str:
        return await self._write("processed", data, ext)

    async def get(self, ref: str) -> bytes:
        path = self.path_for(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise PermanentError(f"저장소에 없는 참조: {ref}")
        except OSError as e:
            raise TransientError(f"파일 읽기 실패: {e}")


def _transform(data: bytes, instruction: str) -> bytes:
    """원본 bytes → 지시문 적용 → JPEG bytes. 스레드풀에서 실행된다."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError):
        raise PermanentError("이미지를 읽을 수 없습니다")

    result = operations.apply(img, instruction)
    buf = io.BytesIO()
    result.save(buf, "JPEG", quality=90)
    return buf.getvalue()


class PillowProcessor:
    """AIProcessor 인터페이스의 로컬 구현."""

    def __init__(self, storage: LocalStorage, workers: int = 2):
        self._storage = storage
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pillow")

    async def _run(self, ref: str, instruction: str) -> str:
        data = await self._storage.get(ref)
        loop = asyncio.get_running_loop()
        output = await loop.run_in_executor(self._pool, _transform, data, instruction)
        return await self._storage.put_processed(output)

    async def process(self, original_ref: str, instructions: str) -> str:
        logger.debug(f"process {original_ref}: {operations.plan(instructions)}")
        return await self._run(original_ref, instructions)

    async def retouch(self, processed_ref: str, instruction: str) -> str:
        logger.debug(f"retouch {processed_ref}: {operations.plan(instruction)}")
        return await self._run(processed_ref, instruction)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


class ZipArchiveBuilder:
    def __init__(self, storage: LocalStorage, output_dir: str):
        self._storage = storage
        self.output_dir = Path(output_dir)

    def path_for(self, archive_ref: str) -> Path:
        path = (self.output_dir / archive_ref).resolve()
        if not path.is_relative_to(self.output_dir.resolve()) or path.suffix != ".zip":
            raise PermanentError(f"잘못된 아카이브 참조: {archive_ref}")
        return path

    async def build(self, refs: list[str], summary: str | None) -> str:
        contents = [(os.path.basename(ref), await self._storage.get(ref)) for ref in refs]
        archive_ref = f"archive-{uuid.uuid4().hex}.zip"
        path = self.path_for(archive_ref)

        def write() -> None:
            os.makedirs(path.parent, exist_ok=True)
            with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for name, data in contents:
                    zf.writestr(f"images/{name}", data)
                if summary:
                    zf.writestr("summary.txt", summary)

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise TransientError(f"아카이브 저장 실패: {e}")
        return archive_ref


class FilesystemDamClient:
    """DAM 업로드를 로컬 폴더 복사로 흉내 낸다: <root>/<provider>/<target_path>."""

    def __init__(self, root: str, storage: LocalStorage, connection: DamConnection):
        self.root = Path(root) / connection.provider
        self._storage = storage
        self._connection = connection

    async def upload(self, ref: str, target_path: str, metadata: dict[str, Any]) -> str:
        dest = (self.root / target_path.lstrip("/")).resolve()
        if not dest.is_relative_to(self.root.resolve()):
            raise PermanentError(f"허용되지 않는 대상 경로: {target_path}")
        data = await self._storage.get(ref)

        def write() -> None:
            os.makedirs(dest.parent, exist_ok=True)
            dest.write_bytes(data)
            if metadata:
                sidecar = dest.with_name(dest.name + ".json")
                sidecar.write_text(json.dumps(metadata, ensure_ascii=False, indent=2), encoding="utf-8")

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise TransientError(f"DAM 전송 실패: {e}")
        return f"dam://{self._connection.provider}{target_path}"


def filesystem_dam_factory(root: str, storage: LocalStorage):
    def factory(connection: DamConnection) -> FilesystemDamClient:
        return FilesystemDamClient(root, storage, connection)

    return factory
