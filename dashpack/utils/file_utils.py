import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

# Process umask, read once: os.umask can only be queried by setting it
_UMASK = os.umask(0o022)
os.umask(_UMASK)


def atomic_write(path: Union[str, Path], data: Union[bytes, str], encoding: str = "utf-8") -> None:
    """
    Write ``data`` to ``path`` through a temporary file in the same folder.

    The temporary file is renamed over the target once fully written, so a
    reader never observes a partially written file. An existing target keeps
    its permissions, a new file gets the regular umask-based mode instead of
    the private mode of the temporary file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        data = data.encode(encoding)

    try:
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        mode = 0o666 & ~_UMASK

    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.remove(temp_name)
        except OSError as e:
            logger.warning(f"Could not remove temporary file {temp_name}: {e}")
        raise


def copy_file(source: Union[str, Path], target: Union[str, Path]) -> None:
    """Copy a file with the same temp-then-rename discipline as atomic_write."""
    source = Path(source)
    target = Path(target)
    if source.resolve() == target.resolve():
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = target.with_name(f".{target.name}.tmp")
    shutil.copyfile(source, temp_path)
    os.replace(temp_path, target)


def delete_old_files(folder: Union[str, Path], extensions: tuple[str, ...]) -> int:
    """Delete files of the given extensions directly inside ``folder``."""
    folder = Path(folder)
    if not folder.is_dir():
        return 0
    count = 0
    for file_path in folder.iterdir():
        if file_path.is_file() and file_path.name.endswith(extensions):
            file_path.unlink()
            count += 1
    return count


def delete_file(path: Union[str, Path]) -> bool:
    path = Path(path)
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
