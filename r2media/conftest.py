import dataclasses
import io
import logging
from logging import Logger
from pathlib import Path
from typing import Any, Generator, Optional

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from pyvips import Image  # type: ignore

from r2media.cache import FileExistenceCache, MemoryCache
from r2media.config import STORAGE_MEDIA_R2, R2Config
from r2media.keyformat import KeyFormatter
from r2media.log import MyJsonFormatter
from r2media.objectstore import R2Storage
from r2media.scratch import TemporaryProcessor
from r2media.transcode import ImageTranscoder

BUCKET = 'media'
KEY_PREFIX = 'shop'
BASE_MEDIA_URL = 'https://cdn.example.com/media'


def client_error(code: str, operation: str) -> ClientError:
  return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


@dataclasses.dataclass
class FakeObject:
  body: bytes
  content_type: Optional[str]
  content_disposition: Optional[str]


class FakeS3:
  """Answers the subset of the boto3 S3 client API used by R2Storage."""

  def __init__(self) -> None:
    self.objects: dict[tuple[str, str], FakeObject] = {}
    self.calls: list[str] = []
    self.failures: dict[str, Exception] = {}

  def record(self, operation: str) -> None:
    self.calls.append(operation)
    if operation in self.failures:
      raise self.failures[operation]

  def count(self, operation: str) -> int:
    return self.calls.count(operation)

  def keys(self, bucket: str = BUCKET) -> list[str]:
    return sorted(k for b, k in self.objects if b == bucket)

  def put(self, key: str, body: bytes, bucket: str = BUCKET) -> None:
    self.objects[(bucket, key)] = FakeObject(body, None, None)

  def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
    self.record('get_object')
    obj = self.objects.get((Bucket, Key))
    if obj is None:
      raise client_error('NoSuchKey', 'GetObject')
    return {
        'Body': StreamingBody(io.BytesIO(obj.body), len(obj.body)),
        'ContentType': obj.content_type or 'binary/octet-stream',
        'ContentLength': len(obj.body),
    }

  def put_object(
      self,
      Bucket: str,
      Key: str,
      Body: bytes,
      ContentType: Optional[str] = None,
      ContentDisposition: Optional[str] = None,
  ) -> dict[str, Any]:
    self.record('put_object')
    self.objects[(Bucket, Key)] = FakeObject(Body, ContentType, ContentDisposition)
    return {}

  def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
    self.record('head_object')
    obj = self.objects.get((Bucket, Key))
    if obj is None:
      raise client_error('404', 'HeadObject')
    return {'ContentLength': len(obj.body)}

  def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
    self.record('delete_object')
    self.objects.pop((Bucket, Key), None)
    return {}

  def delete_objects(self, Bucket: str, Delete: dict[str, Any]) -> dict[str, Any]:
    self.record('delete_objects')
    assert len(Delete['Objects']) <= 1000
    for o in Delete['Objects']:
      self.objects.pop((Bucket, o['Key']), None)
    return {}

  def copy_object(self, Bucket: str, CopySource: dict[str, str], Key: str) -> dict[str, Any]:
    self.record('copy_object')
    src = self.objects.get((CopySource['Bucket'], CopySource['Key']))
    if src is None:
      raise client_error('NoSuchKey', 'CopyObject')
    self.objects[(Bucket, Key)] = dataclasses.replace(src)
    return {}

  def list_objects_v2(
      self,
      Bucket: str,
      MaxKeys: int = 1000,
      Prefix: str = '',
      Delimiter: str = '',
      ContinuationToken: Optional[str] = None,
  ) -> dict[str, Any]:
    self.record('list_objects_v2')
    keys = [k for k in self.keys(Bucket) if k.startswith(Prefix)]

    if Delimiter != '':
      contents = []
      prefixes: list[str] = []
      for k in keys:
        rest = k[len(Prefix):]
        if Delimiter in rest:
          cp = Prefix + rest.split(Delimiter, 1)[0] + Delimiter
          if cp not in prefixes:
            prefixes.append(cp)
        else:
          contents.append({'Key': k})
      return {
          'Contents': contents,
          'CommonPrefixes': [{
              'Prefix': p
          } for p in prefixes],
          'IsTruncated': False,
      }

    start = 0 if ContinuationToken is None else int(ContinuationToken)
    page = keys[start:start + MaxKeys]
    res: dict[str, Any] = {'Contents': [{'Key': k} for k in page], 'KeyCount': len(page)}
    if start + MaxKeys < len(keys):
      res['IsTruncated'] = True
      res['NextContinuationToken'] = str(start + MaxKeys)
    else:
      res['IsTruncated'] = False
    return res


def make_image(width: int, height: int, alpha: bool = False) -> Image:
  bands = 4 if alpha else 3
  color = [200, 120, 40, 128] if alpha else [200, 120, 40]
  return (Image.black(width, height, bands=bands) + color).cast('uchar').copy(interpretation='srgb')


def image_bytes(width: int, height: int, suffix: str = '.jpg', alpha: bool = False) -> bytes:
  return make_image(width, height, alpha).write_to_buffer(suffix)


def write_image(path: Path, width: int, height: int, alpha: bool = False) -> str:
  path.parent.mkdir(parents=True, exist_ok=True)
  make_image(width, height, alpha).write_to_file(str(path))
  return str(path)


@pytest.fixture
def logger(tmp_path: Path) -> Generator[Logger, None, None]:
  log = logging.getLogger('r2media.test')
  log.setLevel(logging.DEBUG)

  log_file = open(tmp_path / 'test.log', 'w')
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(log_file)
  log.addHandler(log_handler)

  yield log

  log.removeHandler(log_handler)
  log_file.close()


@pytest.fixture
def config(tmp_path: Path) -> R2Config:
  return R2Config(
      media_storage=STORAGE_MEDIA_R2,
      account_id='abc123',
      bucket=BUCKET,
      access_key='AKIAEXAMPLE',
      secret_key='secret',
      key_prefix=KEY_PREFIX,
      base_media_url=BASE_MEDIA_URL,
      scratch_dir=str(tmp_path / 'scratch'),
      media_dir=str(tmp_path / 'media'))


@pytest.fixture
def s3() -> FakeS3:
  return FakeS3()


@pytest.fixture
def storage(logger: Logger, s3: FakeS3) -> R2Storage:
  return R2Storage(logger, s3, BUCKET, KeyFormatter(KEY_PREFIX))  # type: ignore


@pytest.fixture
def existence() -> FileExistenceCache:
  return FileExistenceCache(MemoryCache(), 3600)


@pytest.fixture
def processor(
    logger: Logger,
    storage: R2Storage,
    existence: FileExistenceCache,
    config: R2Config,
) -> TemporaryProcessor:
  return TemporaryProcessor(logger, storage, existence, config.scratch_dir)


@pytest.fixture
def transcoder(logger: Logger) -> ImageTranscoder:
  return ImageTranscoder(logger)


def config_headers(config: R2Config) -> dict[str, str]:
  return {
      'media-storage': config.media_storage,
      'account-id': config.account_id,
      'bucket': config.bucket,
      'access-key': config.access_key,
      'secret-key': config.secret_key,
      'key-prefix': config.key_prefix,
      'base-media-url': config.base_media_url,
      'scratch-dir': config.scratch_dir,
      'media-dir': config.media_dir,
  }


def origin_request_event(headers: dict[str, str], uri: str, querystring: str = '') -> Any:
  return {
      'Records': [{
          'cf': {
              'config': {
                  'distributionDomainName': 'd111111abcdef8.cloudfront.net',
                  'distributionId': 'EDFDVBD6EXAMPLE',
                  'eventType': 'origin-request',
                  'requestId': '4TyzHTaYWb1GX1qTfsHhEqV6HUDd_BzoBZnwfnvQc_1oF26ClkoUSEQ==',
              },
              'request': {
                  'clientIp': '203.0.113.178',
                  'headers': {},
                  'method': 'GET',
                  'origin': {
                      's3': {
                          'authMethod': 'none',
                          'customHeaders': {
                              f'x-env-{k}': [{
                                  'key': f'x-env-{k}',
                                  'value': v,
                              }] for k, v in headers.items()
                          },
                          'domainName': 'media.example.com',
                          'path': '',
                          'readTimeout': 30,
                          'responseCompletionTimeout': 30,
                      },
                  },
                  'querystring': querystring,
                  'uri': uri,
              },
          },
      }],
  }
