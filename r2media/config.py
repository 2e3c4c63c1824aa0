import dataclasses
import os
import tempfile
from typing import Callable, Mapping, Optional, Self

from r2media.typing import Request

STORAGE_MEDIA_FILE_SYSTEM = 'file'
STORAGE_MEDIA_R2 = 'r2'

DEFAULT_REGION = 'auto'
DEFAULT_CACHE_TTL = 3600
DEFAULT_GENERATABLE_PATTERNS = 'catalog/product/cache/**'

HEADER_PREFIX = 'x-env-'
ENVIRON_PREFIX = 'R2MEDIA_'

truthy_values = frozenset(['1', 'true', 'yes', 'on'])


class ConfigError(Exception):
  pass


def default_scratch_dir() -> str:
  return os.path.join(tempfile.gettempdir(), 'r2media')


def parse_cache_ttl(value: str) -> int:
  if value == '':
    return DEFAULT_CACHE_TTL
  try:
    ttl = int(value)
  except ValueError:
    raise ConfigError(f'invalid cache-ttl: {value}')
  return ttl if 0 < ttl else DEFAULT_CACHE_TTL


@dataclasses.dataclass(eq=True, frozen=True)
class R2Config:
  media_storage: str = STORAGE_MEDIA_FILE_SYSTEM
  account_id: str = ''
  endpoint: str = ''
  region: str = DEFAULT_REGION
  bucket: str = ''
  access_key: str = ''
  secret_key: str = ''
  key_prefix: str = ''
  path_style: bool = False
  cache_ttl: int = DEFAULT_CACHE_TTL
  base_media_url: str = ''
  scratch_dir: str = dataclasses.field(default_factory=default_scratch_dir)
  cache_url: str = ''
  media_dir: str = ''
  generatable_patterns: tuple[str, ...] = (DEFAULT_GENERATABLE_PATTERNS,)

  def is_r2_selected(self) -> bool:
    return self.media_storage == STORAGE_MEDIA_R2

  def resolved_endpoint(self) -> str:
    if self.endpoint != '':
      return self.endpoint
    if self.account_id == '':
      return ''
    return f'https://{self.account_id}.r2.cloudflarestorage.com'

  @classmethod
  def from_lookup(cls, lookup: Callable[[str], Optional[str]]) -> Self:

    def get(name: str, default: str = '') -> str:
      value = lookup(name)
      return default if value is None else value.strip()

    media_storage = get('media-storage', STORAGE_MEDIA_FILE_SYSTEM).lower()
    if media_storage not in (STORAGE_MEDIA_FILE_SYSTEM, STORAGE_MEDIA_R2):
      raise ConfigError(f'unknown media-storage: {media_storage}')

    patterns = get('generatable-patterns', DEFAULT_GENERATABLE_PATTERNS)

    config = cls(
        media_storage=media_storage,
        account_id=get('account-id'),
        endpoint=get('endpoint'),
        region=get('region') or DEFAULT_REGION,
        bucket=get('bucket'),
        access_key=get('access-key'),
        secret_key=get('secret-key'),
        key_prefix=get('key-prefix').strip('/'),
        path_style=get('path-style').lower() in truthy_values,
        cache_ttl=parse_cache_ttl(get('cache-ttl')),
        base_media_url=get('base-media-url').rstrip('/'),
        scratch_dir=get('scratch-dir') or default_scratch_dir(),
        cache_url=get('cache-url'),
        media_dir=get('media-dir'),
        generatable_patterns=tuple(p.strip() for p in patterns.split(',') if p.strip() != ''))

    if config.is_r2_selected() and config.bucket == '':
      raise ConfigError('bucket is required when media-storage is r2')

    return config

  @classmethod
  def from_request(cls, req: Request) -> Self:
    headers = req['origin']['s3']['customHeaders']

    def lookup(name: str) -> Optional[str]:
      key = f'{HEADER_PREFIX}{name}'
      if key not in headers:
        return None
      return headers[key][0]['value']

    return cls.from_lookup(lookup)

  @classmethod
  def from_environ(cls, environ: Mapping[str, str] = os.environ) -> Self:

    def lookup(name: str) -> Optional[str]:
      return environ.get(ENVIRON_PREFIX + name.upper().replace('-', '_'))

    return cls.from_lookup(lookup)
