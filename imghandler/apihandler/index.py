import base64
import json
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client
from mypy_boto3_secretsmanager.client import SecretsManagerClient

from imghandler.config import Settings
from imghandler.errors import ImageHandlerError
from imghandler.imagehandler.index import ImageHandler
from imghandler.imagerequest.index import ImageRequest, format_http_date
from imghandler.log import init_logging
from imghandler.typing import ApiEvent, ApiResponse, Edits, HttpPath

# Path suffix that asks for the request to be passed through untouched.
PASS_THROUGH_TYPE = 'AWS-MAGICKS'

WIDTHS = {
    'xs': 250,
    'sm': 500,
    'md': 750,
    'lg': 1440,
    'src': 9999,  # Never used as a width.
}

FALLBACK_CACHE_CONTROL = 'max-age=31536000,public'

INTERNAL_ERROR = {
    'message': 'Internal error. Please contact the system administrator.',
    'code': 'InternalError',
    'status': HTTPStatus.INTERNAL_SERVER_ERROR.value,
}

logger = init_logging(__name__)


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), ensure_ascii=False)


def encode_request(bucket: str, key: str, edits: Edits) -> HttpPath:
  body = json_dump({'bucket': bucket, 'key': key, 'edits': edits})
  return HttpPath('/' + base64.b64encode(body.encode('utf-8')).decode())


def split_type_path(path: str) -> Tuple[str, str]:
  """Splits `/{image}/{type}` into the image key and the type token."""
  trimmed = path[1:] if path.startswith('/') else path
  trimmed = trimmed[:-1] if trimmed.endswith('/') else trimmed
  parts = trimmed.split('/')
  image_type = parts.pop()
  return '/'.join(parts), image_type


def is_alb_event(event: ApiEvent) -> bool:
  context = event.get('requestContext')
  return isinstance(context, dict) and 'elb' in context


def get_response_headers(
    settings: Settings,
    is_err: bool = False,
    is_alb: bool = False,
) -> dict[str, str]:
  headers = {
      'Access-Control-Allow-Methods': 'GET',
      'Access-Control-Allow-Headers': 'Content-Type, Authorization',
  }
  if not is_alb:
    headers['Access-Control-Allow-Credentials'] = 'true'
  if settings.cors_enabled:
    headers['Access-Control-Allow-Origin'] = settings.cors_origin or ''
  if is_err:
    headers['Content-Type'] = 'application/json'
  return headers


def set_headers(headers: dict[str, str], values: Mapping[str, Optional[str]]) -> None:
  for name, value in values.items():
    if value is not None:
      headers[name] = value


class ImageServer:
  instances: dict[Settings, 'ImageServer'] = {}

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      s3: S3Client,
      rekognition: RekognitionClient,
      secrets_manager: SecretsManagerClient,
  ):
    self.log = log
    self.settings = settings
    self.s3 = s3
    self.image_request = ImageRequest(log, settings, s3, secrets_manager)
    self.image_handler = ImageHandler(log, settings, s3, rekognition)

  @classmethod
  def from_env(cls, log: Logger, environ: Optional[Mapping[str, str]] = None) -> 'ImageServer':
    settings = Settings.from_env(environ)

    if settings not in cls.instances:
      cls.instances[settings] = cls(
          log=log,
          settings=settings,
          s3=boto3.client('s3', region_name=settings.region),
          rekognition=boto3.client('rekognition', region_name=settings.region),
          secrets_manager=boto3.client('secretsmanager', region_name=settings.region))

    return cls.instances[settings]

  def normalize_event(self, event: ApiEvent) -> ApiEvent:
    image, image_type = split_type_path(event.get('path') or '')

    if image_type == PASS_THROUGH_TYPE:
      return {**event, 'path': HttpPath(f'/{image}')}

    if image_type not in WIDTHS:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'BadImageType', 'Invalid image type requested.')

    edits: Edits = {} if image_type == 'src' else {'resize': {'width': WIDTHS[image_type]}}
    bucket = self.settings.allowed_source_buckets()[0]

    return {**event, 'path': encode_request(bucket, image, edits)}

  def get_fallback_image(self, status: int, is_alb: bool) -> Optional[ApiResponse]:
    bucket = self.settings.default_fallback_image_bucket or ''
    key = self.settings.default_fallback_image_key or ''
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
      body = res['Body'].read()
    except (ClientError, BotoCoreError) as e:
      self.log.error({
          'message': 'error occurred while getting the default fallback image',
          'bucket': bucket,
          'key': key,
          'reason': str(e),
      })
      return None

    headers = get_response_headers(self.settings, False, is_alb)
    set_headers(
        headers, {
            'Content-Type': res.get('ContentType'),
            'Last-Modified':
                format_http_date(res['LastModified']) if 'LastModified' in res else None,
            'Cache-Control': FALLBACK_CACHE_CONTROL,
        })

    return {
        'statusCode': status,
        'isBase64Encoded': True,
        'headers': headers,
        'body': base64.b64encode(body).decode(),
    }

  def error_response(self, e: Exception, is_alb: bool) -> ApiResponse:
    status = e.status if isinstance(e, ImageHandlerError) else HTTPStatus.INTERNAL_SERVER_ERROR

    if self.settings.fallback_enabled:
      fallback = self.get_fallback_image(int(status), is_alb)
      if fallback is not None:
        return fallback

    return {
        'statusCode': int(status),
        'isBase64Encoded': False,
        'headers': get_response_headers(self.settings, True, is_alb),
        'body': json.dumps(e.to_dict() if isinstance(e, ImageHandlerError) else INTERNAL_ERROR),
    }

  def process(self, event: ApiEvent) -> ApiResponse:
    is_alb = is_alb_event(event)

    try:
      modified_event = self.normalize_event(event)

      request = self.image_request.setup(modified_event)
      self.log.info({
          'message': 'request',
          **request.to_log(),
      })

      body = self.image_handler.process(request)

      headers = get_response_headers(self.settings, False, is_alb)
      set_headers(
          headers, {
              'Content-Type': request.content_type,
              'Expires': request.expires,
              'Last-Modified': request.last_modified,
              'Cache-Control': request.cache_control,
          })
      if request.headers is not None:
        headers.update(request.headers)

      return {
          'statusCode': HTTPStatus.OK.value,
          'isBase64Encoded': True,
          'headers': headers,
          'body': body,
      }
    except ImageHandlerError as e:
      self.log.warning({
          'message': 'image request failed',
          'path': event.get('path'),
          'status': e.status,
          'code': e.code,
          'reason': e.message,
      })
      return self.error_response(e, is_alb)
    except Exception as e:
      self.log.exception({
          'message': 'unexpected error',
          'path': event.get('path'),
          'reason': str(e),
      })
      return self.error_response(e, is_alb)


def lambda_main(event: ApiEvent) -> ApiResponse:
  logger.info({
      'message': 'event',
      'event': event,
  })

  server = ImageServer.from_env(logger)
  return server.process(event)
