import dataclasses
import os
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Generator, Iterable, Optional, Self
from urllib import parse

from r2media.cache import FileExistenceCache
from r2media.config import ConfigError, R2Config
from r2media.log import ContextLogger, init_logging
from r2media.objectstore import R2Storage
from r2media.scratch import TemporaryProcessor
from r2media.transcode import ImageTranscoder, InvalidImage, UnsupportedFormat
from r2media.typing import (
    LogicalPath,
    OriginRequestEvent,
    ResizeBatchItem,
    ResizeBatchPayload,
    ResizeBatchResponse,
    ResponseResult
)

PRODUCT_MEDIA_PATH = 'catalog/product'
CACHE_PATH = f'{PRODUCT_MEDIA_PATH}/cache'
IMAGE_TYPE = 'image'

DEFAULT_QUALITY = 80
MIN_QUALITY = 1
MAX_QUALITY = 100

CACHE_CONTROL_REDIRECT = 'no-cache'

logger = init_logging(__name__)


class ErrorKind(Enum):
  NOT_FOUND = 'not-found'
  INVALID_INPUT = 'invalid-input'
  UNSUPPORTED_FORMAT = 'unsupported-format'
  INVALID_IMAGE = 'invalid-image'
  UPLOAD_FAILURE = 'upload-failure'
  TRANSIENT_PROBE_FAILURE = 'transient-probe-failure'
  UNEXPECTED = 'unexpected'


@dataclasses.dataclass(frozen=True)
class Redirected:
  url: str
  status: int = HTTPStatus.FOUND


@dataclasses.dataclass(frozen=True)
class Failed:
  status: int
  kind: ErrorKind


ResizeResult = Redirected | Failed


def parse_dimension(value: Optional[str]) -> Optional[int]:
  if value is None:
    return None
  try:
    n = int(value)
  except ValueError:
    return None
  return n if 0 < n else None


def parse_quality(value: Optional[str]) -> int:
  if value is None or value == '':
    return DEFAULT_QUALITY
  try:
    q = int(value)
  except ValueError:
    return DEFAULT_QUALITY
  return max(MIN_QUALITY, min(MAX_QUALITY, q))


def first(qs: dict[str, list[str]], name: str) -> Optional[str]:
  values = qs.get(name)
  if not values:
    return None
  return values[0].strip()


def has_parent_reference(path: str) -> bool:
  return '..' in path.split('/')


def size_segment(width: Optional[int], height: Optional[int]) -> str:
  return f'{width or "auto"}x{height or "auto"}'


def derived_path(image: str, width: Optional[int], height: Optional[int], quality: int) -> LogicalPath:
  return LogicalPath(f'{CACHE_PATH}/{size_segment(width, height)}/{quality}/{IMAGE_TYPE}/{image}')


@dataclasses.dataclass(eq=True, frozen=True)
class ResizeDescriptor:
  image: str
  width: Optional[int]
  height: Optional[int]
  quality: int = DEFAULT_QUALITY

  @classmethod
  def create(
      cls,
      image: str,
      width: Optional[int] = None,
      height: Optional[int] = None,
      quality: int = DEFAULT_QUALITY,
  ) -> Self:
    return cls(
        image=image.strip('/'),
        width=width if width is not None and 0 < width else None,
        height=height if height is not None and 0 < height else None,
        quality=max(MIN_QUALITY, min(MAX_QUALITY, quality)))

  @classmethod
  def maybe_from_querystring(cls, qs: dict[str, list[str]]) -> Optional[Self]:
    image = first(qs, 'image')
    if image is None or image.strip('/') == '':
      return None

    return cls(
        image=image.strip('/'),
        width=parse_dimension(first(qs, 'width')),
        height=parse_dimension(first(qs, 'height')),
        quality=parse_quality(first(qs, 'quality')))

  @property
  def derived_path(self) -> LogicalPath:
    return derived_path(self.image, self.width, self.height, self.quality)

  @property
  def original_path(self) -> LogicalPath:
    if self.image.startswith(f'{PRODUCT_MEDIA_PATH}/'):
      return LogicalPath(self.image)
    return LogicalPath(f'{PRODUCT_MEDIA_PATH}/{self.image}')


class ResizeServer(ContextLogger):
  instances: dict[R2Config, 'ResizeServer'] = {}

  def __init__(
      self,
      log: Logger,
      config: R2Config,
      existence: FileExistenceCache,
      processor: TemporaryProcessor,
      transcoder: ImageTranscoder,
  ):
    super().__init__(log)
    self.config = config
    self.existence = existence
    self.processor = processor
    self.transcoder = transcoder

  @classmethod
  def from_config(cls, log: Logger, config: R2Config) -> 'ResizeServer':
    if config not in cls.instances:
      existence = FileExistenceCache.from_config(config)
      storage = R2Storage.from_config(log, config)
      cls.instances[config] = cls(
          log=log,
          config=config,
          existence=existence,
          processor=TemporaryProcessor(log, storage, existence, config.scratch_dir),
          transcoder=ImageTranscoder(log))

    return cls.instances[config]

  def cdn_url(self, path: str) -> str:
    return f'{self.config.base_media_url}/{path.lstrip("/")}'

  def generate(self, descriptor: ResizeDescriptor) -> Optional[ErrorKind]:
    resized_path = descriptor.derived_path

    temp_original = self.processor.download_to_temp(descriptor.original_path)
    if temp_original is None:
      self.log_error('original image not found in R2', {'original': descriptor.original_path})
      return ErrorKind.NOT_FOUND

    temp_resized: Optional[str] = None
    try:
      temp_resized = self.processor.get_temp_path(resized_path)
      os.makedirs(os.path.dirname(temp_resized), mode=0o755, exist_ok=True)

      try:
        self.transcoder.resize(
            temp_original,
            temp_resized,
            descriptor.width,
            descriptor.height,
            descriptor.quality,
        )
      except UnsupportedFormat as e:
        self.log_error('unsupported image', {'original': descriptor.original_path, 'reason': str(e)})
        return ErrorKind.UNSUPPORTED_FORMAT
      except InvalidImage as e:
        self.log_error('invalid image', {'original': descriptor.original_path, 'reason': str(e)})
        return ErrorKind.INVALID_IMAGE

      if not self.processor.upload_to_r2(temp_resized, resized_path):
        return ErrorKind.UPLOAD_FAILURE
    finally:
      self.processor.cleanup(temp_original)
      if temp_resized is not None:
        self.processor.cleanup(temp_resized)

    return None

  def process_descriptor(self, descriptor: ResizeDescriptor) -> ResizeResult:
    if has_parent_reference(descriptor.image):
      self.log_error('invalid image path', {'image': descriptor.image})
      return Failed(HTTPStatus.BAD_REQUEST, ErrorKind.INVALID_INPUT)

    try:
      resized_path = descriptor.derived_path

      if self.existence.get(resized_path) is True:
        self.log_debug('resized image cached', {'resized': resized_path})
        return Redirected(self.cdn_url(resized_path))

      error = self.generate(descriptor)
      if error is not None:
        self.log_error(
            'failed to generate resized image', {
                'original': descriptor.original_path,
                'resized': resized_path,
                'width': descriptor.width,
                'height': descriptor.height,
                'quality': descriptor.quality,
                'kind': error.value,
            })
        return Failed(HTTPStatus.INTERNAL_SERVER_ERROR, error)

      self.existence.set(resized_path, True)
      return Redirected(self.cdn_url(resized_path))
    except Exception as e:
      self.log_error('on-demand resize error', {'image': descriptor.image, 'reason': str(e)})
      return Failed(HTTPStatus.INTERNAL_SERVER_ERROR, ErrorKind.UNEXPECTED)

  def process(self, qs: dict[str, list[str]]) -> ResizeResult:
    if not self.config.is_r2_selected():
      return Failed(HTTPStatus.NOT_FOUND, ErrorKind.NOT_FOUND)

    descriptor = ResizeDescriptor.maybe_from_querystring(qs)
    if descriptor is None:
      self.log_error('no image path provided', {})
      return Failed(HTTPStatus.BAD_REQUEST, ErrorKind.INVALID_INPUT)

    return self.process_descriptor(descriptor)

  def process_batch(
      self,
      descriptors: Iterable[ResizeDescriptor],
  ) -> Generator[tuple[ResizeDescriptor, ResizeResult], None, None]:
    try:
      for descriptor in descriptors:
        yield descriptor, self.process_descriptor(descriptor)
    finally:
      removed = self.processor.cleanup_old_files()
      self.log_debug('batch finished', {'stale_removed': removed})


def to_response(result: ResizeResult) -> ResponseResult:
  match result:
    case Redirected(url=url, status=status):
      return {
          'status': str(int(status)),
          'headers': {
              'location': [{
                  'value': url,
              }],
              'cache-control': [{
                  'value': CACHE_CONTROL_REDIRECT,
              }],
          },
      }
    case Failed(status=status):
      return {
          'status': str(int(status)),
          'headers': {
              'cache-control': [{
                  'value': CACHE_CONTROL_REDIRECT,
              }],
          },
      }
    case _:
      raise Exception('system error')


def lambda_main(event: OriginRequestEvent) -> ResponseResult:
  req = event['Records'][0]['cf']['request']

  try:
    config = R2Config.from_request(req)
  except (KeyError, ConfigError) as e:
    logger.error({'message': 'invalid configuration', 'reason': str(e)})
    return to_response(Failed(HTTPStatus.INTERNAL_SERVER_ERROR, ErrorKind.UNEXPECTED))

  if not config.is_r2_selected():
    return to_response(Failed(HTTPStatus.NOT_FOUND, ErrorKind.NOT_FOUND))

  qstr = req['querystring']
  try:
    server = ResizeServer.from_config(logger, config)
  except Exception as e:
    logger.error({'message': 'failed to initialize resize server', 'reason': str(e)})
    return to_response(Failed(HTTPStatus.INTERNAL_SERVER_ERROR, ErrorKind.UNEXPECTED))

  server.set_log_context(path=req['uri'], qstr=qstr)

  result = server.process(parse.parse_qs(qstr))

  server.log_debug('responded', {
      'status': int(result.status),
      'location': result.url if isinstance(result, Redirected) else None,
  })

  return to_response(result)


def summarize(response: ResizeBatchResponse) -> dict[str, Any]:
  failed = [r for r in response['results'] if 'error' in r]
  return {'total': len(response['results']), 'failed': len(failed)}


def descriptors_from_payload(payload: ResizeBatchPayload) -> Generator[ResizeDescriptor, None, None]:
  for image in payload['images']:
    for size in payload['sizes']:
      yield ResizeDescriptor.create(
          image,
          width=size.get('width'),
          height=size.get('height'),
          quality=size.get('quality', DEFAULT_QUALITY))


def lambda_batch(payload: ResizeBatchPayload, config: Optional[R2Config] = None) -> ResizeBatchResponse:
  if config is None:
    config = R2Config.from_environ()

  results: list[ResizeBatchItem] = []
  if not config.is_r2_selected():
    logger.warning({'message': 'batch resize skipped, R2 is not the media storage'})
    return {'results': results}

  server = ResizeServer.from_config(logger, config)
  server.set_log_context(batch=True)

  for descriptor, result in server.process_batch(descriptors_from_payload(payload)):
    item: ResizeBatchItem = {
        'image': descriptor.image,
        'path': descriptor.derived_path,
        'status': int(result.status),
    }
    if isinstance(result, Redirected):
      item['location'] = result.url
    else:
      item['error'] = result.kind.value
    results.append(item)

  response: ResizeBatchResponse = {'results': results}
  server.log_info('batch resized', summarize(response))
  return response
