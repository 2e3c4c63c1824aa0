import os
from logging import Logger
from pathlib import Path
from typing import Iterator, Optional, Protocol

from mypy_boto3_s3.client import S3Client

from r2media.config import ConfigError, R2Config
from r2media.objectstore import R2Storage
from r2media.typing import LogicalPath


class StorageBackend(Protocol):

  def load(self, path: str) -> Optional[bytes]:
    ...

  def save(self, path: str, content: bytes, overwrite: bool = True) -> bool:
    ...

  def exists(self, path: str) -> bool:
    ...

  def delete(self, path: str) -> bool:
    ...

  def list_files(self, prefix: str = '') -> Iterator[LogicalPath]:
    ...


class LocalStorage:
  root: Path

  def __init__(self, media_dir: str):
    self.root = Path(media_dir).resolve()

  def file_path(self, path: str) -> Path:
    p = (self.root / path.strip('/')).resolve()
    if p != self.root and self.root not in p.parents:
      raise ValueError(f'path outside of media directory: {path}')
    return p

  def load(self, path: str) -> Optional[bytes]:
    p = self.file_path(path)
    if not p.is_file():
      return None
    return p.read_bytes()

  def save(self, path: str, content: bytes, overwrite: bool = True) -> bool:
    p = self.file_path(path)
    if not overwrite and p.exists():
      return False
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(content)
    return True

  def exists(self, path: str) -> bool:
    return self.file_path(path).is_file()

  def delete(self, path: str) -> bool:
    p = self.file_path(path)
    if not p.is_file():
      return False
    p.unlink()
    return True

  def list_files(self, prefix: str = '') -> Iterator[LogicalPath]:
    base = self.file_path(prefix)
    if not base.is_dir():
      return

    for dirpath, dirnames, filenames in os.walk(base):
      dirnames.sort()
      for filename in sorted(filenames):
        yield LogicalPath(Path(dirpath, filename).relative_to(self.root).as_posix())


def create_storage(log: Logger, config: R2Config, s3: Optional[S3Client] = None) -> StorageBackend:
  if config.is_r2_selected():
    return R2Storage.from_config(log, config, s3)

  if config.media_dir == '':
    raise ConfigError('media-dir is required for file system storage')
  return LocalStorage(config.media_dir)
