import dataclasses
import datetime
import hashlib
import json
from typing import Callable, Optional, Protocol

import redis
from dateutil import tz

from r2media.config import DEFAULT_CACHE_TTL, R2Config

CACHE_PREFIX = 'r2media_file_exists_'
CACHE_TAG = 'r2media_file_existence'

REDIS_TAG_PREFIX = 'r2media_tag:'


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


class CacheBackend(Protocol):

  def load(self, key: str) -> Optional[bytes]:
    ...

  def save(self, data: bytes, key: str, tags: list[str], ttl: int) -> None:
    ...

  def remove(self, key: str) -> None:
    ...

  def clean(self, tags: list[str]) -> None:
    ...


@dataclasses.dataclass(frozen=True)
class MemoryRecord:
  data: bytes
  tags: frozenset[str]
  created: datetime.datetime
  expires: datetime.datetime


class MemoryCache:
  records: dict[str, MemoryRecord]

  def __init__(self, clock: Callable[[], datetime.datetime] = get_now):
    self.records = {}
    self.clock = clock

  def load(self, key: str) -> Optional[bytes]:
    record = self.records.get(key)
    if record is None:
      return None
    if record.expires <= self.clock():
      del self.records[key]
      return None
    return record.data

  def save(self, data: bytes, key: str, tags: list[str], ttl: int) -> None:
    now = self.clock()
    self.records[key] = MemoryRecord(
        data=data,
        tags=frozenset(tags),
        created=now,
        expires=now + datetime.timedelta(seconds=ttl))

  def remove(self, key: str) -> None:
    self.records.pop(key, None)

  def clean(self, tags: list[str]) -> None:
    targets = set(tags)
    for key in [k for k, r in self.records.items() if r.tags & targets]:
      del self.records[key]


class RedisCache:

  def __init__(self, client: redis.Redis):
    self.client = client

  def load(self, key: str) -> Optional[bytes]:
    return self.client.get(key)

  def save(self, data: bytes, key: str, tags: list[str], ttl: int) -> None:
    self.client.set(key, data, ex=ttl)
    for tag in tags:
      tag_key = f'{REDIS_TAG_PREFIX}{tag}'
      self.client.sadd(tag_key, key)
      # A tag set lives as long as its longest-lived member.
      if self.client.ttl(tag_key) < ttl:
        self.client.expire(tag_key, ttl)

  def remove(self, key: str) -> None:
    self.client.delete(key)

  def clean(self, tags: list[str]) -> None:
    for tag in tags:
      tag_key = f'{REDIS_TAG_PREFIX}{tag}'
      members = self.client.smembers(tag_key)
      if members:
        self.client.delete(*members)
      self.client.delete(tag_key)


cache_instances: dict[str, CacheBackend] = {}


def create_cache(config: R2Config) -> CacheBackend:
  if config.cache_url not in cache_instances:
    if config.cache_url == '':
      cache_instances[config.cache_url] = MemoryCache()
    else:
      cache_instances[config.cache_url] = RedisCache(
          redis.Redis.from_url(config.cache_url, socket_timeout=5, socket_connect_timeout=5))

  return cache_instances[config.cache_url]


def normalize_path(path: str) -> str:
  return path.strip('/')


class FileExistenceCache:

  def __init__(self, cache: CacheBackend, ttl: int = DEFAULT_CACHE_TTL):
    self.cache = cache
    self.ttl = ttl if 0 < ttl else DEFAULT_CACHE_TTL

  @classmethod
  def from_config(cls, config: R2Config) -> 'FileExistenceCache':
    return cls(create_cache(config), config.cache_ttl)

  @staticmethod
  def cache_key(path: str) -> str:
    digest = hashlib.md5(normalize_path(path).encode('utf-8')).hexdigest()
    return f'{CACHE_PREFIX}{digest}'

  def has(self, path: str) -> bool:
    return self.cache.load(self.cache_key(path)) is not None

  def get(self, path: str) -> Optional[bool]:
    data = self.cache.load(self.cache_key(path))
    if data is None:
      return None

    try:
      result = json.loads(data)
    except ValueError:
      return None
    return result if isinstance(result, bool) else None

  def set(self, path: str, exists: bool) -> None:
    self.cache.save(
        json.dumps(exists).encode('utf-8'), self.cache_key(path), [CACHE_TAG], self.ttl)

  def remove(self, path: str) -> None:
    self.cache.remove(self.cache_key(path))

  def clear(self) -> None:
    self.cache.clean([CACHE_TAG])
