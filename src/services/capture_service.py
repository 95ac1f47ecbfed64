"""
Still capture via fswebcam.

Each capture writes ``timelapse_<timestamp>.jpg`` into the captures directory.
The directory must be writable when the service is constructed; the
application refuses to start otherwise.
"""
import base64
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os
import structlog

from src.config.constants import VideoDefaults
from src.models.capture import CaptureInfo, CaptureRecord, CaptureSettings
from src.services.base_service import BaseService
from src.services.process_service import ProcessService
from src.utils.config import AppSettings
from src.utils.errors import FilesystemError, NotFoundError, ProcessError, SecurityError
from src.utils.timestamps import capture_filename
from src.utils.validators import is_safe_filename, is_within_root

logger = structlog.get_logger().bind(component="CaptureService")

# 1x1 grey baseline JPEG used when MOCK_CAMERA is enabled
PLACEHOLDER_JPEG = base64.b64decode(
    "/9j/4AAQSkZJRgABAQEASABIAAD/2wBDAP//////////////////////////////////////"
    "////////////////////////////////////////////////wgALCAABAAEBAREA/8QAFBAB"
    "AAAAAAAAAAAAAAAAAAAAAP/aAAgBAQABPxA="
)


class CaptureService(BaseService):
    """Single still captures into the captures directory."""

    def __init__(self, process_service: ProcessService, settings: AppSettings):
        super().__init__()
        self.process_service = process_service
        self.captures_dir = settings.captures_path
        self.camera_path = settings.camera_path
        self.device = settings.camera_device
        self.timeout = settings.capture_timeout
        self.mock_camera = settings.mock_camera

        self._ensure_writable()

    def _ensure_writable(self) -> None:
        try:
            self.captures_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=self.captures_dir, prefix=".write_check_"):
                pass
        except OSError as e:
            logger.error("Captures directory is not writable", path=str(self.captures_dir), error=str(e))
            raise FilesystemError("write", str(self.captures_dir), str(e))

    def build_arguments(self, settings: CaptureSettings, output_path: Path) -> List[str]:
        args = ["-d", self.device, "-r", settings.resolution, "--no-banner"]
        if settings.rotation:
            args += ["--rotate", str(settings.rotation)]
        flips = [axis for axis, enabled in (("h", settings.flip_horizontal),
                                            ("v", settings.flip_vertical)) if enabled]
        if flips:
            args += ["--flip", ",".join(flips)]
        args.append(str(output_path))
        return args

    async def capture(self, settings: CaptureSettings, correlation_id: Optional[str] = None) -> CaptureRecord:
        """Take one still.

        Raises:
            ProcessError: the camera binary failed, timed out or wrote nothing.
            FilesystemError: the image could not be written or inspected.
        """
        captured_at = datetime.now(timezone.utc)
        filename = capture_filename(captured_at)
        output_path = self.captures_dir / filename

        if self.mock_camera:
            try:
                async with aiofiles.open(output_path, "wb") as f:
                    await f.write(PLACEHOLDER_JPEG)
            except OSError as e:
                raise FilesystemError("write", str(output_path), str(e))
        else:
            await self.process_service.run(
                self.camera_path,
                self.build_arguments(settings, output_path),
                name="fswebcam",
                timeout=self.timeout,
                correlation_id=correlation_id,
            )

        try:
            size = (await aiofiles.os.stat(output_path)).st_size
        except FileNotFoundError:
            raise ProcessError("Camera exited successfully but wrote no image",
                               details={"path": str(output_path)})
        except OSError as e:
            raise FilesystemError("stat", str(output_path), str(e))
        if size == 0:
            raise ProcessError("Camera wrote an empty image", details={"path": str(output_path)})

        logger.info("Image captured", filename=filename, resolution=settings.resolution, size=size)
        return CaptureRecord(
            filename=filename,
            filepath=str(output_path),
            resolution=settings.resolution,
            captured_at=captured_at,
        )

    def _image_paths(self) -> List[Path]:
        try:
            return [
                path for path in self.captures_dir.iterdir()
                if path.suffix.lower() in VideoDefaults.ALLOWED_EXTENSIONS and path.is_file()
            ]
        except OSError as e:
            raise FilesystemError("list", str(self.captures_dir), str(e))

    async def list_captures(self) -> List[CaptureInfo]:
        """Stored captures, newest first."""
        captures = []
        for path in self._image_paths():
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            captures.append(CaptureInfo(
                filename=path.name,
                size=stat.st_size,
                created=datetime.fromtimestamp(stat.st_mtime),
            ))
        captures.sort(key=lambda c: (c.created, c.filename), reverse=True)
        return captures

    async def count_captures(self) -> int:
        return len(self._image_paths())

    async def clear_captures(self) -> int:
        """Delete every stored capture and return how many were removed."""
        removed = 0
        for path in self._image_paths():
            try:
                await aiofiles.os.remove(path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Failed to delete capture", filename=path.name, error=str(e))
                raise FilesystemError("delete", str(path), str(e))
        logger.info("Captures cleared", count=removed)
        return removed

    def resolve_capture(self, filename: str) -> Path:
        """Validate a capture filename and return its path."""
        if not is_safe_filename(filename):
            logger.error("Rejected capture filename", filename=filename)
            raise SecurityError("Invalid filename", details={"filename": filename})
        path = self.captures_dir / filename
        if not is_within_root(path, self.captures_dir):
            raise SecurityError("Path outside captures directory", details={"filename": filename})
        if path.suffix.lower() not in VideoDefaults.ALLOWED_EXTENSIONS or not path.is_file():
            raise NotFoundError("capture", filename)
        return path

    def get_status(self) -> dict:
        return {
            "captures_dir": str(self.captures_dir),
            "camera": self.camera_path,
            "mock_camera": self.mock_camera,
            "writable": os.access(self.captures_dir, os.W_OK),
        }
