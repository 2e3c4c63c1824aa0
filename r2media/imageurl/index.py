import dataclasses
from http import HTTPStatus
from logging import Logger
from typing import Optional, Self
from urllib import parse

import requests
from pathspec import PathSpec

from r2media.cache import FileExistenceCache
from r2media.config import ConfigError, R2Config
from r2media.log import ContextLogger, init_logging
from r2media.objectstore import R2Storage
from r2media.resize.index import (
    DEFAULT_QUALITY,
    PRODUCT_MEDIA_PATH,
    ErrorKind,
    ResizeDescriptor,
    ResizeServer,
    has_parent_reference
)
from r2media.scratch import TemporaryProcessor
from r2media.transcode import ImageTranscoder
from r2media.typing import OriginRequestEvent, Request

PROBE_TIMEOUT = 5

logger = init_logging(__name__)


class CdnProbe(ContextLogger):

  def __init__(
      self,
      log: Logger,
      base_media_url: str,
      session: requests.Session,
      timeout: float = PROBE_TIMEOUT,
  ):
    super().__init__(log)
    self.base_media_url = base_media_url
    self.session = session
    self.timeout = timeout

  def exists(self, path: str) -> Optional[bool]:
    """Return whether the CDN serves `path`, or None when it could not be asked."""
    url = f'{self.base_media_url}/{path.lstrip("/")}'
    try:
      res = self.session.head(url, timeout=self.timeout, allow_redirects=True)
    except requests.RequestException as e:
      self.log_error('error checking CDN for image', {'url': url, 'reason': str(e)})
      return None

    if res.status_code != HTTPStatus.OK:
      self.log_debug('file not found in CDN', {'url': url, 'status': res.status_code})
      return False
    return True


@dataclasses.dataclass(eq=True, frozen=True)
class CachePathParam:
  width: Optional[int]
  height: Optional[int]
  quality: int
  image: str

  @classmethod
  def maybe_from_path(cls, path: str) -> Optional[Self]:
    # catalog/product/cache/800x600/80/image/s/h/shoe.jpg
    parts = path.split('/')
    if len(parts) < 7:
      return None

    sizes = parts[3].split('x')
    if len(sizes) != 2:
      return None

    try:
      width = None if sizes[0] == 'auto' else int(sizes[0])
      height = None if sizes[1] == 'auto' else int(sizes[1])
      quality = int(parts[4]) if parts[4] != '' else DEFAULT_QUALITY
    except ValueError:
      return None

    return cls(width=width, height=height, quality=quality, image='/'.join(parts[6:]))

  def to_descriptor(self) -> ResizeDescriptor:
    return ResizeDescriptor.create(self.image, self.width, self.height, self.quality)


class ImageUrlServer(ContextLogger):
  instances: dict[R2Config, 'ImageUrlServer'] = {}

  def __init__(
      self,
      log: Logger,
      config: R2Config,
      existence: FileExistenceCache,
      probe: CdnProbe,
      resizer: ResizeServer,
  ):
    super().__init__(log)
    self.config = config
    self.existence = existence
    self.probe = probe
    self.resizer = resizer
    self.path_spec = PathSpec.from_lines('gitwildmatch', config.generatable_patterns)

  @classmethod
  def from_config(cls, log: Logger, config: R2Config) -> 'ImageUrlServer':
    if config not in cls.instances:
      existence = FileExistenceCache.from_config(config)
      storage = R2Storage.from_config(log, config)
      resizer = ResizeServer(
          log=log,
          config=config,
          existence=existence,
          processor=TemporaryProcessor(log, storage, existence, config.scratch_dir),
          transcoder=ImageTranscoder(log))
      cls.instances[config] = cls(
          log=log,
          config=config,
          existence=existence,
          probe=CdnProbe(log, config.base_media_url, requests.Session()),
          resizer=resizer)

    return cls.instances[config]

  def is_generatable(self, path: str) -> bool:
    return self.path_spec.match_file(path)

  def check_exists(self, path: str) -> bool:
    cached = self.existence.get(path)
    if cached is not None:
      return cached

    exists = self.probe.exists(path)
    if exists is None:
      # Probe failures stay uncached so the next request asks again.
      self.log_warning('existence unknown', {
          'resized': path,
          'kind': ErrorKind.TRANSIENT_PROBE_FAILURE.value,
      })
      return False

    self.existence.set(path, exists)
    return exists

  def generate(self, path: str) -> bool:
    param = CachePathParam.maybe_from_path(path)
    if param is None or has_parent_reference(path):
      self.log_debug('not a resized image path', {'resized': path})
      return False

    descriptor = param.to_descriptor()
    if descriptor.derived_path != path:
      self.log_debug('non canonical resized path', {'resized': path})
      return False

    error = self.resizer.generate(descriptor)
    if error is None:
      self.existence.set(path, True)
      self.log_info('generated image on-demand', {
          'resized': path,
          'width': descriptor.width,
          'height': descriptor.height,
      })
      return True

    self.log_debug('failed to generate image on-demand', {'resized': path, 'kind': error.value})
    if error is ErrorKind.NOT_FOUND:
      # Remember the miss to avoid repeated attempts.
      self.existence.set(path, False)
    return False

  def ensure(self, path: str) -> bool:
    path = path.strip('/')
    if not self.config.is_r2_selected() or not self.is_generatable(path):
      return False

    try:
      if self.check_exists(path):
        return True
      return self.generate(path)
    except Exception as e:
      self.log_error('error in on-demand image generation', {'resized': path, 'reason': str(e)})
      return False


def path_from_uri(uri: str) -> str:
  return parse.unquote(uri[1:])


def lambda_main(event: OriginRequestEvent) -> Request:
  req = event['Records'][0]['cf']['request']

  try:
    config = R2Config.from_request(req)
  except (KeyError, ConfigError) as e:
    logger.warning({'message': 'invalid configuration', 'reason': str(e)})
    return req

  if not config.is_r2_selected() or config.base_media_url == '':
    return req

  try:
    server = ImageUrlServer.from_config(logger, config)
  except Exception as e:
    logger.error({'message': 'failed to initialize image url server', 'reason': str(e)})
    return req

  path = path_from_uri(req['uri'])
  if path.startswith(f'{PRODUCT_MEDIA_PATH}/'):
    server.set_log_context(path=path, qstr=req['querystring'])
    exists = server.ensure(path)
    server.log_debug('done', {'exists': exists})

  return req
