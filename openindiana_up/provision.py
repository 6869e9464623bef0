"""Boot media download and disk image creation for openindiana-up."""

from __future__ import annotations

import subprocess
import tempfile
import time
from pathlib import Path
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from openindiana_up.constants import EMPTY_DISK_THRESHOLD_KB, QEMU_IMG_BINARY
from openindiana_up.exceptions import ProvisionError
from openindiana_up.utils import disk_usage_kb, ensure_directory, log, run


def is_empty_disk(path: Path) -> bool:
    """A missing image, or one with almost nothing allocated, counts as blank."""
    if not path.exists():
        return True
    return disk_usage_kb(path) < EMPTY_DISK_THRESHOLD_KB


def iso_filename(url: str) -> str:
    name = Path(urlparse(url).path).name
    if not name:
        raise ProvisionError(f"Cannot derive a file name from URL {url}; pass --output")
    return name


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "openindiana-up/0.1"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ProvisionError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ProvisionError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".part") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    log("SUCCESS", f"Downloaded ISO to {destination}")


def fetch_boot_media(url: str, output: Optional[str] = None, drive_path: Optional[str] = None) -> Optional[Path]:
    """Return a local ISO for ``url``, downloading it only when needed.

    Returns None when the target drive already holds data, since booting the
    installer again would risk overwriting it.
    """
    if drive_path:
        drive = Path(drive_path)
        if drive.exists() and not is_empty_disk(drive):
            log(
                "WARN",
                f"Drive image {drive} is not empty (size: {disk_usage_kb(drive)} KB), "
                "skipping ISO download to avoid overwriting existing data.",
            )
            return None

    destination = Path(output) if output else Path(iso_filename(url))
    if destination.exists():
        log("WARN", f"File {destination} already exists, skipping download.")
        return destination

    download_file(url, destination)
    return destination


def ensure_disk_image(path: str, disk_format: str, size: str) -> bool:
    """Create the disk image unless it exists; returns True when created."""
    image = Path(path)
    if image.exists():
        log("WARN", f"Drive image {image} already exists, skipping creation.")
        return False

    ensure_directory(image.parent)
    try:
        run([QEMU_IMG_BINARY, "create", "-f", disk_format, str(image), size])
    except FileNotFoundError as exc:
        raise ProvisionError(f"{QEMU_IMG_BINARY} not found; install QEMU tools") from exc
    except subprocess.CalledProcessError as exc:
        raise ProvisionError(f"Failed to create drive image {image}", returncode=exc.returncode) from exc
    log("SUCCESS", f"Created drive image at {image}")
    return True
