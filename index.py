from aws_lambda_powertools.utilities.typing import LambdaContext

from r2media import sync
from r2media.imageurl import index as imageurl
from r2media.resize import index as resize
from r2media.typing import (
    MaintenancePayload,
    MaintenanceResponse,
    OriginRequestEvent,
    Request,
    ResizeBatchPayload,
    ResizeBatchResponse,
    ResponseResult
)


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> Request:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = imageurl.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def resize_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> ResponseResult:
  return resize.lambda_main(event)


def resize_batch_lambda_handler(
    event: ResizeBatchPayload,
    _: LambdaContext,
) -> ResizeBatchResponse:
  return resize.lambda_batch(event)


def maintenance_lambda_handler(
    event: MaintenancePayload,
    _: LambdaContext,
) -> MaintenanceResponse:
  return sync.lambda_maintenance(event)
