"""
Resource checks run before an encode.
"""
from pathlib import Path
from typing import Any, Dict, List, Tuple

import structlog

from src.config.constants import VideoDefaults
from src.utils.config import AppSettings
from src.utils.errors import FilesystemError, ResourceError
from src.utils.system_check import get_free_disk_space, get_memory_usage

logger = structlog.get_logger().bind(component="ResourceMonitor")

MB = 1024 * 1024


class ResourceMonitor:
    """Disk, memory and input-size limits for the encoder."""

    def __init__(self, settings: AppSettings):
        self.videos_root = settings.videos_path
        self.min_disk_space = settings.min_disk_space
        self.max_memory_usage = settings.max_memory_usage
        self.max_input_images = settings.max_input_images

    @staticmethod
    def count_images(folder: Path) -> int:
        try:
            return sum(
                1 for path in folder.iterdir()
                if path.suffix.lower() in VideoDefaults.ALLOWED_EXTENSIONS and path.is_file()
            )
        except OSError as e:
            raise FilesystemError("list", str(folder), str(e))

    def check(self, input_folder: Path) -> Dict[str, Any]:
        """Run every check and raise one ResourceError listing all failures.

        Free disk space is skipped with a warning when it cannot be determined.
        """
        failures: List[Tuple[str, str, Any]] = []

        free = get_free_disk_space(self.videos_root)
        if free is None:
            logger.warning("Skipping disk space check", path=str(self.videos_root))
        elif free < self.min_disk_space:
            failures.append((
                "disk",
                f"insufficient disk space ({free // MB} MB free, {self.min_disk_space // MB} MB required)",
                self.min_disk_space,
            ))

        memory = get_memory_usage()
        if memory > self.max_memory_usage:
            failures.append((
                "memory",
                f"memory usage too high ({memory // MB} MB, limit {self.max_memory_usage // MB} MB)",
                self.max_memory_usage,
            ))

        image_count = self.count_images(input_folder)
        if image_count == 0:
            failures.append(("images", "no images found in input folder", 1))
        elif image_count > self.max_input_images:
            failures.append((
                "images",
                f"too many images ({image_count}, limit {self.max_input_images})",
                self.max_input_images,
            ))

        if failures:
            reason = "Resource checks failed: " + "; ".join(f[1] for f in failures)
            logger.warning("Resource checks failed", failures=[f[1] for f in failures])
            resource, _, limit = failures[0]
            raise ResourceError(resource, reason, limit=limit,
                                details={"failures": [{"resource": r, "reason": m} for r, m, _ in failures]})

        logger.debug("Resource checks passed", free_disk=free, memory=memory, image_count=image_count)
        return {"free_disk": free, "memory": memory, "image_count": image_count}
