from typing import Any, Literal, NewType, NotRequired, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)

Edits = dict[str, Any]


class ElbContext(TypedDict):
  targetGroupArn: str


class RequestContext(TypedDict):
  elb: NotRequired[ElbContext]
  requestId: NotRequired[str]
  stage: NotRequired[str]


class ApiEvent(TypedDict):
  httpMethod: NotRequired[Literal['GET', 'HEAD', 'OPTIONS', 'PUT', 'DELETE', 'POST', 'PATCH']]
  path: NotRequired[HttpPath]
  headers: NotRequired[dict[str, str] | None]
  queryStringParameters: NotRequired[dict[str, str] | None]
  requestContext: NotRequired[RequestContext]
  isBase64Encoded: NotRequired[bool]
  body: NotRequired[str | None]


class ApiResponse(TypedDict):
  statusCode: int
  isBase64Encoded: bool
  headers: dict[str, str]
  body: str


class DecodedRequest(TypedDict):
  bucket: NotRequired[str]
  key: NotRequired[str]
  edits: NotRequired[Edits]
  headers: NotRequired[dict[str, str]]
  outputFormat: NotRequired[str]
