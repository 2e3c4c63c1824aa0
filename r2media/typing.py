from typing import Literal, NewType, NotRequired, TypedDict

LogicalPath = NewType('LogicalPath', str)
ObjectKey = NewType('ObjectKey', str)


class Header(TypedDict):
  key: NotRequired[str]
  value: str


class S3Origin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  readTimeout: int
  responseCompletionTimeout: int
  authMethod: Literal['origin-access-identity', 'none']
  region: NotRequired[str]


class CustomOrigin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  keepaliveTimeout: int
  port: int
  protocol: Literal['http', 'https']
  readTimeout: int
  responseCompletionTimeout: int
  sslProtocols: list[Literal['TLSv1.2', 'TLSv1.1', 'TLSv1', 'SSLv3']]


class Origin(TypedDict):
  custom: NotRequired[CustomOrigin]
  s3: NotRequired[S3Origin]


class Request(TypedDict):
  method: Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH', 'CONNECT']
  uri: str
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: str
  origin: Origin


class OriginRequestConfig(TypedDict):
  distributionDomainName: str
  distributionId: str
  eventType: Literal['origin-request']
  requestId: str


class OriginRequestRecord(TypedDict):
  config: OriginRequestConfig
  request: Request


class OriginRequestRecordContainer(TypedDict):
  cf: OriginRequestRecord


class OriginRequestEvent(TypedDict):
  Records: list[OriginRequestRecordContainer]


class ResponseResult(TypedDict):
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]
  headers: NotRequired[dict[str, list[Header]]]
  status: str
  statusDescription: NotRequired[str]


class ResizeSize(TypedDict):
  width: NotRequired[int]
  height: NotRequired[int]
  quality: NotRequired[int]


class ResizeBatchPayload(TypedDict):
  images: list[str]
  sizes: list[ResizeSize]


class ResizeBatchItem(TypedDict):
  image: str
  path: str
  status: int
  location: NotRequired[str]
  error: NotRequired[str]


class ResizeBatchResponse(TypedDict):
  results: list[ResizeBatchItem]


class MaintenancePayload(TypedDict):
  action: Literal['sweep', 'clean-cache', 'sync']
  prefix: NotRequired[str]


class MaintenanceResponse(TypedDict):
  action: str
  ok: bool
  copied: NotRequired[int]
  failed: NotRequired[int]
