"""
System check utilities for installed helper binaries and host resources.
"""
import os
import shutil
import socket
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger().bind(component="system_check")

_PROCESS_STARTED = time.monotonic()


def check_ffmpeg(ffmpeg_path: str = "ffmpeg") -> Dict[str, Any]:
    """
    Check if ffmpeg is installed and available on the system.

    Returns:
        Dict with:
            - installed (bool): Whether ffmpeg is installed
            - version (str|None): Version string if found
            - error (str|None): Error message if check failed
    """
    try:
        result = subprocess.run(
            [ffmpeg_path, '-version'],
            capture_output=True,
            text=True,
            timeout=5
        )

        if result.returncode == 0:
            output_lines = result.stdout.strip().split('\n')
            version_line = output_lines[0] if output_lines and output_lines[0] else "Unknown version"

            logger.info("ffmpeg check successful", version=version_line)

            return {
                'installed': True,
                'version': version_line,
                'error': None
            }
        else:
            logger.warning("ffmpeg command failed", returncode=result.returncode, stderr=result.stderr)
            return {
                'installed': False,
                'version': None,
                'error': f"ffmpeg command failed with code {result.returncode}"
            }

    except FileNotFoundError:
        logger.warning("ffmpeg not found on system", ffmpeg_path=ffmpeg_path)
        return {
            'installed': False,
            'version': None,
            'error': "ffmpeg is not installed or not in system PATH"
        }
    except subprocess.TimeoutExpired:
        logger.error("ffmpeg version check timed out")
        return {
            'installed': False,
            'version': None,
            'error': "ffmpeg check timed out"
        }
    except OSError as e:
        logger.error("Unexpected error checking ffmpeg", error=str(e), error_type=type(e).__name__)
        return {
            'installed': False,
            'version': None,
            'error': f"Unexpected error: {str(e)}"
        }


def get_memory_usage() -> int:
    """Resident set size of this process in bytes."""
    try:
        with open("/proc/self/statm") as statm:
            resident_pages = int(statm.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        import resource
        # ru_maxrss is KiB on Linux and the peak rather than the current value
        return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024


def get_free_disk_space(path: Path) -> Optional[int]:
    """Free bytes on the filesystem holding ``path``; None when it cannot be determined."""
    try:
        return shutil.disk_usage(path).free
    except OSError as e:
        logger.warning("Could not determine free disk space", path=str(path), error=str(e))
        return None


def get_process_uptime() -> float:
    """Seconds since this module was imported, i.e. since the server started."""
    return time.monotonic() - _PROCESS_STARTED


def get_server_ip() -> str:
    """Best-effort LAN address for building URLs that browsers can reach."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packets are sent for a UDP connect
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()
