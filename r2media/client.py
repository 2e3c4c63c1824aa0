import dataclasses
import re
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client

from r2media.config import DEFAULT_REGION, R2Config

masked_secret_re = re.compile(r'^\*+$')


def client_options(
    endpoint: str,
    region: str,
    access_key: str,
    secret_key: str,
    path_style: bool,
) -> dict[str, Any]:
  options: dict[str, Any] = {
      'region_name': region or DEFAULT_REGION,
      'aws_access_key_id': access_key,
      'aws_secret_access_key': secret_key,
      'config': Config(
          signature_version='s3v4',
          s3={'addressing_style': 'path' if path_style else 'virtual'}),
  }
  if endpoint != '':
    options['endpoint_url'] = endpoint
  return options


def create_client(config: R2Config) -> S3Client:
  return boto3.client(
      's3',
      **client_options(
          endpoint=config.resolved_endpoint(),
          region=config.region,
          access_key=config.access_key,
          secret_key=config.secret_key,
          path_style=config.path_style))


@dataclasses.dataclass(eq=True, frozen=True)
class Credentials:
  endpoint: str
  region: str
  bucket: str
  access_key: str
  secret_key: str
  path_style: bool

  def debug_suffix(self) -> str:
    return (
        f' [Debug: endpoint={self.endpoint}, region={self.region}, '
        f'accessKey={self.access_key[:4]}..., secretKeyLen={len(self.secret_key)}, '
        f'pathStyle={"true" if self.path_style else "false"}]')


@dataclasses.dataclass(eq=True, frozen=True)
class ConnectionResult:
  success: bool
  message: str


def resolve_value(provided: Optional[str], saved: str) -> str:
  if provided is None or provided == '':
    return saved
  return provided.strip()


def resolve_secret_value(provided: Optional[str], saved: str) -> str:
  if provided is None or provided == '':
    return saved
  trimmed = provided.strip()
  # Forms echo the saved secret back as asterisks.
  if trimmed == '' or masked_secret_re.match(trimmed):
    return saved
  return trimmed


def resolve_credentials(
    config: R2Config,
    account_id: Optional[str] = None,
    endpoint: Optional[str] = None,
    region: Optional[str] = None,
    bucket: Optional[str] = None,
    access_key: Optional[str] = None,
    secret_key: Optional[str] = None,
    path_style: Optional[bool] = None,
) -> Credentials:
  resolved_account_id = resolve_value(account_id, config.account_id)
  resolved_endpoint = resolve_value(endpoint, config.resolved_endpoint())
  if resolved_endpoint == '' and resolved_account_id != '':
    resolved_endpoint = f'https://{resolved_account_id}.r2.cloudflarestorage.com'

  return Credentials(
      endpoint=resolved_endpoint,
      region=resolve_value(region, config.region),
      bucket=resolve_value(bucket, config.bucket),
      access_key=resolve_value(access_key, config.access_key),
      secret_key=resolve_secret_value(secret_key, config.secret_key),
      path_style=config.path_style if path_style is None else path_style)


def missing_fields(credentials: Credentials) -> list[str]:
  missing = []
  if credentials.endpoint == '':
    missing.append('Endpoint (or Account ID)')
  if credentials.bucket == '':
    missing.append('Bucket')
  if credentials.access_key == '':
    missing.append('Access Key ID')
  if credentials.secret_key == '':
    missing.append('Secret Access Key')
  return missing


def check_connection(
    config: R2Config,
    s3: Optional[S3Client] = None,
    **overrides: Any,
) -> ConnectionResult:
  credentials = resolve_credentials(config, **overrides)

  missing = missing_fields(credentials)
  if missing:
    return ConnectionResult(
        success=False, message=f'Missing required fields: {", ".join(missing)}')

  if s3 is None:
    s3 = boto3.client(
        's3',
        **client_options(
            endpoint=credentials.endpoint,
            region=credentials.region,
            access_key=credentials.access_key,
            secret_key=credentials.secret_key,
            path_style=credentials.path_style))

  try:
    s3.list_objects_v2(Bucket=credentials.bucket, MaxKeys=1)
  except ClientError as e:
    error = e.response.get('Error', {})
    code = error.get('Code', 'Unknown')
    message = error.get('Message', str(e))
    return ConnectionResult(
        success=False,
        message=f'Connection failed ({code}): {message}{credentials.debug_suffix()}')
  except BotoCoreError as e:
    return ConnectionResult(success=False, message=f'Connection failed: {e}')

  return ConnectionResult(
      success=True,
      message=f'Connection successful! Bucket "{credentials.bucket}" is accessible.')
