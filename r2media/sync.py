import dataclasses
from logging import Logger
from typing import Optional

from mypy_boto3_s3.client import S3Client

from r2media.cache import FileExistenceCache
from r2media.config import ConfigError, R2Config
from r2media.log import init_logging
from r2media.objectstore import R2Storage
from r2media.resize.index import CACHE_PATH
from r2media.scratch import TemporaryProcessor
from r2media.storage import LocalStorage, StorageBackend
from r2media.typing import MaintenancePayload, MaintenanceResponse

logger = init_logging(__name__)


@dataclasses.dataclass
class SyncReport:
  copied: int = 0
  failed: int = 0


def synchronize(
    log: Logger,
    source: StorageBackend,
    dest: StorageBackend,
    prefix: str = '',
) -> SyncReport:
  report = SyncReport()

  for path in source.list_files(prefix):
    try:
      content = source.load(path)
      if content is None:
        log.warning({'message': 'file vanished during sync', 'path': path})
        report.failed += 1
        continue

      dest.save(path, content)
      report.copied += 1
      log.debug({'message': 'synced file', 'path': path})
    except Exception as e:
      log.error({'message': 'failed to sync file', 'path': path, 'reason': str(e)})
      report.failed += 1

  log.info({
      'message': 'synchronization finished',
      'prefix': prefix,
      'copied': report.copied,
      'failed': report.failed,
  })
  return report


def clean_image_cache(log: Logger, storage: R2Storage, existence: FileExistenceCache) -> bool:
  try:
    storage.delete_directory(CACHE_PATH)
  except Exception as e:
    log.warning({
        'message': 'unable to delete R2 catalog image cache',
        'path': CACHE_PATH,
        'reason': str(e),
    })
    return False
  finally:
    existence.clear()

  return True


def lambda_maintenance(
    payload: MaintenancePayload,
    config: Optional[R2Config] = None,
    s3: Optional[S3Client] = None,
) -> MaintenanceResponse:
  if config is None:
    config = R2Config.from_environ()

  action = payload['action']
  if not config.is_r2_selected():
    logger.warning({'message': 'maintenance skipped, R2 is not the media storage', 'action': action})
    return {'action': action, 'ok': False}

  storage = R2Storage.from_config(logger, config, s3)
  existence = FileExistenceCache.from_config(config)

  match action:
    case 'sweep':
      processor = TemporaryProcessor(logger, storage, existence, config.scratch_dir)
      removed = processor.cleanup_old_files()
      logger.info({'message': 'stale scratch files removed', 'count': removed})
      return {'action': action, 'ok': True}
    case 'clean-cache':
      return {'action': action, 'ok': clean_image_cache(logger, storage, existence)}
    case 'sync':
      if config.media_dir == '':
        raise ConfigError('media-dir is required for sync')
      report = synchronize(
          logger, LocalStorage(config.media_dir), storage, payload.get('prefix', CACHE_PATH))
      return {
          'action': action,
          'ok': report.failed == 0,
          'copied': report.copied,
          'failed': report.failed,
      }
    case _:
      raise ValueError(f'unknown maintenance action: {action}')
