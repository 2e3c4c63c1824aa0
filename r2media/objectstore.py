import os
from logging import Logger
from typing import IO, Any, Iterable, Iterator, Optional, Self

import pyvips
from botocore.exceptions import ClientError
from mypy_boto3_s3.client import S3Client
from pyvips import Image  # type: ignore

from r2media.client import create_client
from r2media.config import R2Config
from r2media.keyformat import KeyFormatter
from r2media.log import ContextLogger
from r2media.typing import LogicalPath, ObjectKey

DELETE_BATCH_SIZE = 1000
LIST_PAGE_SIZE = 1000

LOADER_MIME_MAP = {
    'jpegload': 'image/jpeg',
    'pngload': 'image/png',
    'gifload': 'image/gif',
    'webpload': 'image/webp',
    'tiffload': 'image/tiff',
    'svgload': 'image/svg+xml',
}

EXTENSION_MIME_MAP = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'svg': 'image/svg+xml',
    'bmp': 'image/bmp',
    'ico': 'image/vnd.microsoft.icon',
    'tiff': 'image/tiff',
    'tif': 'image/tiff',
    'pdf': 'application/pdf',
    'txt': 'text/plain',
    'css': 'text/css',
    'js': 'application/javascript',
    'json': 'application/json',
    'xml': 'application/xml',
    'html': 'text/html',
    'htm': 'text/html',
    'mp4': 'video/mp4',
    'mp3': 'audio/mpeg',
    'zip': 'application/zip',
}

inline_types = [
    'image/',
    'text/plain',
    'text/css',
    'text/html',
    'application/javascript',
    'application/json',
    'application/xml',
    'application/pdf',
    'video/',
    'audio/',
]


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def normalize_loader(loader: str) -> str:
  # 'jpegload_buffer' and 'jpegload_source' are the same decoder.
  return loader.split('_', 1)[0]


def sniff_content_type(content: bytes) -> Optional[str]:
  if content == b'':
    return None
  try:
    image = Image.new_from_buffer(content, '')
  except pyvips.Error:
    return None
  return LOADER_MIME_MAP.get(normalize_loader(image.get('vips-loader')))


def detect_content_type(path: str, content: bytes) -> Optional[str]:
  mime = sniff_content_type(content)
  if mime is not None:
    return mime

  _, ext = os.path.splitext(path.lower())
  return EXTENSION_MIME_MAP.get(ext[1:])


def is_inline_content_type(mime: str) -> bool:
  return any(mime.startswith(t) for t in inline_types)


class R2Storage(ContextLogger):

  def __init__(self, log: Logger, s3: S3Client, bucket: str, key_formatter: KeyFormatter):
    super().__init__(log)
    self.s3 = s3
    self.bucket = bucket
    self.key_formatter = key_formatter

  @classmethod
  def from_config(cls, log: Logger, config: R2Config, s3: Optional[S3Client] = None) -> Self:
    return cls(
        log=log,
        s3=create_client(config) if s3 is None else s3,
        bucket=config.bucket,
        key_formatter=KeyFormatter(config.key_prefix))

  def key(self, path: str) -> ObjectKey:
    return self.key_formatter.to_key(path)

  def key_prefix(self, path: str) -> str:
    key = self.key(path.strip('/'))
    if key == '':
      return ''
    return key.rstrip('/') + '/'

  def put_object_params(self, path: str, content: bytes) -> dict[str, Any]:
    params: dict[str, Any] = {
        'Bucket': self.bucket,
        'Key': self.key(path),
        'Body': content,
    }

    mime = detect_content_type(path, content)
    if mime is not None:
      params['ContentType'] = mime
      if is_inline_content_type(mime):
        params['ContentDisposition'] = 'inline'

    return params

  def load(self, path: str) -> Optional[bytes]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=self.key(path))
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise e
    return res['Body'].read()

  def download_to(self, path: str, fileobj: IO[bytes]) -> bool:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=self.key(path))
    except ClientError as e:
      if is_not_found_client_error(e):
        return False
      raise e

    for chunk in res['Body'].iter_chunks():
      fileobj.write(chunk)
    return True

  def save(self, path: str, content: bytes, overwrite: bool = True) -> bool:
    path = path.lstrip('/')
    if not overwrite and self.exists(path):
      return False

    self.s3.put_object(**self.put_object_params(path, content))
    return True

  def exists(self, path: str) -> bool:
    try:
      self.s3.head_object(Bucket=self.bucket, Key=self.key(path))
    except ClientError as e:
      if is_not_found_client_error(e):
        return False
      raise e
    return True

  def copy(self, src: str, dst: str) -> bool:
    try:
      self.s3.copy_object(
          Bucket=self.bucket,
          CopySource={
              'Bucket': self.bucket,
              'Key': self.key(src),
          },
          Key=self.key(dst))
    except ClientError as e:
      self.log_error('failed to copy object', {'src': src, 'dst': dst, 'reason': str(e)})
      return False
    return True

  def rename(self, src: str, dst: str) -> bool:
    if not self.copy(src, dst):
      return False
    return self.delete(src)

  def delete(self, path: str) -> bool:
    try:
      self.s3.delete_object(Bucket=self.bucket, Key=self.key(path))
    except ClientError as e:
      self.log_error('failed to delete object', {'path': path, 'reason': str(e)})
      return False
    return True

  def list_params(self, prefix: str, delimiter: str = '') -> dict[str, Any]:
    params: dict[str, Any] = {
        'Bucket': self.bucket,
        'MaxKeys': LIST_PAGE_SIZE,
    }
    if prefix != '':
      params['Prefix'] = prefix
    if delimiter != '':
      params['Delimiter'] = delimiter
    return params

  def list_files(self, prefix: str = '') -> Iterator[LogicalPath]:
    params = self.list_params(self.key_prefix(prefix))
    while True:
      res = self.s3.list_objects_v2(**params)
      for obj in res.get('Contents', []):
        if 'Key' not in obj or obj['Key'].endswith('/'):
          continue
        yield self.key_formatter.from_key(obj['Key'])

      if not res.get('IsTruncated'):
        return
      params['ContinuationToken'] = res['NextContinuationToken']

  def subdirectories(self, path: str) -> list[LogicalPath]:
    res = self.s3.list_objects_v2(**self.list_params(self.key_prefix(path), '/'))

    directories = []
    for cp in res.get('CommonPrefixes', []):
      if 'Prefix' not in cp:
        continue
      directory = self.key_formatter.from_key(cp['Prefix']).rstrip('/')
      if directory != '':
        directories.append(LogicalPath(directory))
    return directories

  def directory_files(self, path: str) -> list[LogicalPath]:
    prefix = self.key_prefix(path)
    res = self.s3.list_objects_v2(**self.list_params(prefix, '/'))

    return [
        self.key_formatter.from_key(obj['Key'])
        for obj in res.get('Contents', [])
        if 'Key' in obj and obj['Key'] != prefix
    ]

  def delete_keys(self, paths: Iterable[str]) -> int:
    keys = [self.key(p) for p in paths if p != '']
    for i in range(0, len(keys), DELETE_BATCH_SIZE):
      self.s3.delete_objects(
          Bucket=self.bucket,
          Delete={
              'Objects': [{
                  'Key': k
              } for k in keys[i:i + DELETE_BATCH_SIZE]],
              'Quiet': True,
          })
    return len(keys)

  def delete_directory(self, path: str) -> int:
    if path.strip('/') == '':
      return 0
    deleted = self.delete_keys(list(self.list_files(path)))
    self.log_debug('directory deleted', {'path': path, 'count': deleted})
    return deleted

  def clear(self) -> int:
    deleted = self.delete_keys(list(self.list_files()))
    self.log_info('storage cleared', {'count': deleted})
    return deleted
