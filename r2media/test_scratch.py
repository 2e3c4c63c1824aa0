import os
import time
from pathlib import Path

import pytest

from r2media.cache import FileExistenceCache
from r2media.conftest import BUCKET, FakeS3, client_error
from r2media.scratch import TemporaryProcessor


def test_get_temp_path(processor: TemporaryProcessor) -> None:
  temp_path = processor.get_temp_path('/catalog/product/a/b.jpg')
  assert temp_path == str(processor.scratch_dir / 'catalog' / 'product' / 'a' / 'b.jpg')

  with pytest.raises(ValueError):
    processor.get_temp_path('../escape.jpg')
  with pytest.raises(ValueError):
    processor.get_temp_path('catalog/../../escape.jpg')


def test_download_to_temp(processor: TemporaryProcessor, s3: FakeS3) -> None:
  s3.put('shop/catalog/product/a.jpg', b'jpeg')

  temp_path = processor.download_to_temp('catalog/product/a.jpg')
  assert temp_path is not None
  assert Path(temp_path).read_bytes() == b'jpeg'


def test_download_missing(processor: TemporaryProcessor) -> None:
  assert processor.download_to_temp('catalog/product/missing.jpg') is None
  assert not Path(processor.get_temp_path('catalog/product/missing.jpg')).exists()


def test_download_failure(processor: TemporaryProcessor, s3: FakeS3) -> None:
  s3.failures['get_object'] = client_error('AccessDenied', 'GetObject')
  assert processor.download_to_temp('catalog/product/a.jpg') is None
  assert not Path(processor.get_temp_path('catalog/product/a.jpg')).exists()


def test_upload_to_r2(
    processor: TemporaryProcessor,
    s3: FakeS3,
    existence: FileExistenceCache,
) -> None:
  temp_path = processor.get_temp_path('catalog/product/cache/a.txt')
  os.makedirs(os.path.dirname(temp_path))
  Path(temp_path).write_bytes(b'text')

  assert processor.upload_to_r2(temp_path, 'catalog/product/cache/a.txt')
  assert s3.objects[(BUCKET, 'shop/catalog/product/cache/a.txt')].body == b'text'
  assert existence.get('catalog/product/cache/a.txt') is True


def test_upload_failures(processor: TemporaryProcessor, s3: FakeS3, tmp_path: Path) -> None:
  assert not processor.upload_to_r2(str(tmp_path / 'nothing.txt'), 'a.txt')

  (tmp_path / 'a.txt').write_bytes(b'a')
  s3.failures['put_object'] = client_error('InternalError', 'PutObject')
  assert not processor.upload_to_r2(str(tmp_path / 'a.txt'), 'a.txt')
  assert s3.keys() == []


def test_cleanup(processor: TemporaryProcessor, tmp_path: Path) -> None:
  p = tmp_path / 'a.txt'
  p.write_bytes(b'a')

  processor.cleanup(str(p))
  assert not p.exists()
  # Missing files are fine.
  processor.cleanup(str(p))


def test_cleanup_old_files(processor: TemporaryProcessor) -> None:
  old = processor.scratch_dir / 'catalog' / 'old' / 'a.jpg'
  fresh = processor.scratch_dir / 'catalog' / 'fresh' / 'b.jpg'
  for p in (old, fresh):
    p.parent.mkdir(parents=True)
    p.write_bytes(b'x')

  stale = time.time() - 7200
  os.utime(old, (stale, stale))

  assert processor.cleanup_old_files() == 1
  assert not old.exists()
  assert not old.parent.exists()
  assert fresh.exists()
  assert processor.scratch_dir.is_dir()
