"""Job-scoped scratch directories.

Usage:
    with job_scratch(job_id) as workdir:
        frame = workdir / "frame_0001.png"
        ...
    # removed here on success and on failure
"""

import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
import structlog

from mediajobs.config import settings
from mediajobs.services.errors import ResourceCleanupError

logger = structlog.get_logger()


def release_scratch(path: Path):
    """Remove a scratch directory; raises ResourceCleanupError if it cannot."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise ResourceCleanupError(f"Could not remove scratch dir {path}: {e}") from e


@contextmanager
def job_scratch(job_id: str, base_dir: Optional[str] = None) -> Iterator[Path]:
    """Create a temp dir for one job and always release it on exit."""
    root = base_dir or settings.scratch_dir
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"job-{job_id[:8]}-", dir=root))
    logger.debug("Scratch dir created", job_id=job_id, path=str(path))
    try:
        yield path
    finally:
        try:
            release_scratch(path)
        except ResourceCleanupError as e:
            logger.warning("Scratch cleanup failed", job_id=job_id, error=str(e))
