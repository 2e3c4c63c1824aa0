import datetime
import os
from logging import Logger
from pathlib import Path
from typing import Optional

from dateutil import tz

from r2media.cache import FileExistenceCache, get_now
from r2media.objectstore import R2Storage

STALE_FILE_AGE = 60 * 60


class TemporaryProcessor:
  """Stages objects between R2 and local files under a private scratch root.

  Every path handed out by this class mirrors its logical path below the
  scratch root so independent callers agree on where a file lives. Callers
  own the files they create and remove them with `cleanup()`; the periodic
  `cleanup_old_files()` sweep only catches what crashed requests left behind.
  """

  def __init__(
      self,
      log: Logger,
      storage: R2Storage,
      existence: FileExistenceCache,
      scratch_dir: str,
  ):
    self.log = log
    self.storage = storage
    self.existence = existence
    self.scratch_dir = Path(scratch_dir).resolve()
    self.scratch_dir.mkdir(mode=0o755, parents=True, exist_ok=True)

  def get_temp_path(self, path: str) -> str:
    p = (self.scratch_dir / path.lstrip('/')).resolve()
    if self.scratch_dir not in p.parents:
      raise ValueError(f'path outside of scratch directory: {path}')
    return str(p)

  def download_to_temp(self, path: str) -> Optional[str]:
    temp_path: Optional[str] = None
    try:
      temp_path = self.get_temp_path(path)
      os.makedirs(os.path.dirname(temp_path), mode=0o755, exist_ok=True)

      with open(temp_path, 'wb') as f:
        found = self.storage.download_to(path, f)

      if not found:
        self.log.debug({'message': 'file not found in R2', 'path': path})
        self.cleanup(temp_path)
        return None

      return temp_path
    except Exception as e:
      self.log.error({
          'message': 'failed to download file from R2 to temp',
          'path': path,
          'reason': str(e),
      })
      if temp_path is not None:
        self.cleanup(temp_path)
      return None

  def upload_to_r2(self, temp_path: str, path: str) -> bool:
    try:
      if not os.path.isfile(temp_path):
        self.log.error({'message': 'temp file not found', 'path': temp_path})
        return False

      with open(temp_path, 'rb') as f:
        content = f.read()

      self.storage.save(path, content)
      self.existence.set(path, True)
      return True
    except Exception as e:
      self.log.error({
          'message': 'failed to upload file from temp to R2',
          'temp_path': temp_path,
          'r2_path': path,
          'reason': str(e),
      })
      return False

  def cleanup(self, temp_path: str) -> None:
    try:
      if os.path.isfile(temp_path):
        os.remove(temp_path)
    except OSError as e:
      self.log.warning({
          'message': 'failed to cleanup temp file',
          'path': temp_path,
          'reason': str(e),
      })

  def cleanup_old_files(self, max_age: int = STALE_FILE_AGE) -> int:
    cutoff = get_now() - datetime.timedelta(seconds=max_age)
    try:
      return self.cleanup_directory(self.scratch_dir, cutoff)
    except OSError as e:
      self.log.warning({'message': 'failed to cleanup old temp files', 'reason': str(e)})
      return 0

  def cleanup_directory(self, directory: Path, cutoff: datetime.datetime) -> int:
    if not directory.is_dir():
      return 0

    removed = 0
    for item in directory.iterdir():
      if item.is_dir() and not item.is_symlink():
        removed += self.cleanup_directory(item, cutoff)
        if not any(item.iterdir()):
          item.rmdir()
      elif item.is_file():
        mtime = datetime.datetime.fromtimestamp(item.stat().st_mtime, tz=tz.tzutc())
        if mtime < cutoff:
          item.unlink()
          removed += 1

    return removed
