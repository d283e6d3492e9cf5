import base64
import binascii
import dataclasses
import datetime
import email.utils
import hashlib
import hmac
import json
import re
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional, cast

from botocore.exceptions import ClientError
from dateutil import parser, tz
from mypy_boto3_s3.client import S3Client
from mypy_boto3_s3.type_defs import GetObjectOutputTypeDef
from mypy_boto3_secretsmanager.client import SecretsManagerClient

from imghandler.config import Settings
from imghandler.errors import ImageHandlerError
from imghandler.formats import content_type_of, normalize_format
from imghandler.typing import ApiEvent, DecodedRequest, Edits, S3Key

DEFAULT_CACHE_CONTROL = 'max-age=31536000,public'

OCTET_STREAM_TYPES = ['binary/octet-stream', 'application/octet-stream']
SVG_CONTENT_TYPE = 'image/svg+xml'

default_path_re = re.compile(
    r'^(/?)([0-9a-zA-Z+/]{4})*(([0-9a-zA-Z+/]{2}==)|([0-9a-zA-Z+/]{3}=))?$')
expires_re = re.compile(r'^\d{8}T\d{6}Z$')
max_age_re = re.compile(r'max-age=(\d+)')

image_signatures = [
    (b'\x89PNG', 'image/png'),
    (b'\xff\xd8\xff\xdb', 'image/jpeg'),
    (b'\xff\xd8\xff\xe0', 'image/jpeg'),
    (b'\xff\xd8\xff\xee', 'image/jpeg'),
    (b'\xff\xd8\xff\xe1', 'image/jpeg'),
    (b'RIFF', 'image/webp'),
    (b'II*\x00', 'image/tiff'),
    (b'MM\x00*', 'image/tiff'),
    (b'GIF8', 'image/gif'),
]


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def format_http_date(dt: datetime.datetime) -> str:
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=datetime.timezone.utc)
  return email.utils.format_datetime(dt.astimezone(datetime.timezone.utc), usegmt=True)


def infer_image_type(data: bytes) -> str:
  for signature, content_type in image_signatures:
    if data.startswith(signature):
      return content_type

  raise ImageHandlerError(
      HTTPStatus.INTERNAL_SERVER_ERROR, 'RequestTypeError',
      'The file does not have an extension and the file type could not be inferred. '
      'Please ensure that your original image is of a supported file type '
      '(jpg, png, tiff, webp, svg). '
      'Refer to the documentation for additional guidance on forming image requests.')


def get_event_header(event: ApiEvent, name: str) -> Optional[str]:
  headers = event.get('headers') or {}
  n = name.lower()
  for k, v in headers.items():
    if k.lower() == n:
      return v
  return None


def get_query_param(event: ApiEvent, name: str) -> Optional[str]:
  qs = event.get('queryStringParameters') or {}
  return qs.get(name)


class RequestType(Enum):
  DEFAULT = 'Default'


@dataclasses.dataclass(frozen=True)
class OriginalImage:
  body: bytes
  content_type: str
  expires: Optional[str]
  last_modified: Optional[str]
  cache_control: str

  @classmethod
  def from_s3_object(cls, obj: GetObjectOutputTypeDef, body: bytes) -> 'OriginalImage':
    content_type = obj.get('ContentType')
    if content_type is None:
      content_type = 'image'
    elif content_type in OCTET_STREAM_TYPES:
      content_type = infer_image_type(body)

    expires: Optional[str] = None
    if 'ExpiresString' in obj:
      try:
        expires = format_http_date(parser.parse(obj['ExpiresString']))
      except (ValueError, OverflowError):
        expires = obj['ExpiresString']
    elif 'Expires' in obj:
      expires = format_http_date(obj['Expires'])

    last_modified = format_http_date(obj['LastModified']) if 'LastModified' in obj else None

    return cls(
        body=body,
        content_type=content_type,
        expires=expires,
        last_modified=last_modified,
        cache_control=obj.get('CacheControl') or DEFAULT_CACHE_CONTROL)


@dataclasses.dataclass
class RequestInfo:
  request_type: RequestType
  bucket: str
  key: S3Key
  edits: Edits
  original_image: bytes = dataclasses.field(repr=False)
  content_type: str
  cache_control: str
  expires: Optional[str] = None
  last_modified: Optional[str] = None
  headers: Optional[dict[str, str]] = None
  output_format: Optional[str] = None

  def to_log(self) -> dict[str, Any]:
    return {
        'request_type': self.request_type.value,
        'bucket': self.bucket,
        'key': self.key,
        'edits': self.edits,
        'content_type': self.content_type,
        'expires': self.expires,
        'last_modified': self.last_modified,
        'cache_control': self.cache_control,
        'headers': self.headers,
        'output_format': self.output_format,
        'original_size': len(self.original_image),
    }


class ImageRequest:
  """Turns an API event into a RequestInfo.

  The event path carries a base64-encoded JSON document describing the source
  bucket, key and edits. The source object is fetched from S3 while parsing so
  the handler gets everything it needs in one value.
  """

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      s3: S3Client,
      secrets_manager: SecretsManagerClient,
  ):
    self.log = log
    self.settings = settings
    self.s3 = s3
    self.secrets_manager = secrets_manager

  def get_allowed_source_buckets(self) -> list[str]:
    return self.settings.allowed_source_buckets()

  def parse_request_type(self, event: ApiEvent) -> RequestType:
    path = event.get('path') or ''
    if default_path_re.match(path):
      return RequestType.DEFAULT

    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST, 'RequestTypeError',
        'The type of request you are making could not be processed. '
        'Please ensure that your original image is of a supported file type '
        '(jpg, png, tiff, webp, svg) '
        'and that your image request is provided in the correct syntax. '
        'Refer to the documentation for additional guidance on forming image requests.')

  def decode_request(self, event: ApiEvent) -> DecodedRequest:
    path = event.get('path')
    if path is None:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'DecodeRequest::CannotReadPath',
          'The URL path you provided could not be read. '
          'Please ensure that it is properly formed according to the solution documentation.')

    encoded = path[1:] if path.startswith('/') else path
    try:
      decoded = json.loads(base64.b64decode(encoded, validate=True).decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError):
      decoded = None

    if not isinstance(decoded, dict):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'DecodeRequest::CannotDecodeRequest',
          'The image request you provided could not be decoded. '
          'Please check that your request is base64 encoded properly '
          'and refer to the documentation for additional guidance.')

    return cast(DecodedRequest, decoded)

  def parse_image_bucket(self, decoded: DecodedRequest) -> str:
    allowed = self.get_allowed_source_buckets()
    bucket = decoded.get('bucket')
    if bucket is None:
      return allowed[0]

    if bucket not in allowed:
      raise ImageHandlerError(
          HTTPStatus.FORBIDDEN, 'ImageBucket::CannotAccessBucket',
          'The bucket you specified could not be accessed. '
          'Please check that the bucket is specified in your SOURCE_BUCKETS.')

    return bucket

  def parse_image_key(self, decoded: DecodedRequest) -> S3Key:
    key = decoded.get('key')
    if not isinstance(key, str) or key == '':
      raise ImageHandlerError(
          HTTPStatus.NOT_FOUND, 'ImageEdits::CannotFindImage',
          'The image you specified could not be found. '
          'Please check your request syntax as well as the bucket you specified '
          'to ensure it exists.')
    return S3Key(key)

  def parse_image_edits(self, decoded: DecodedRequest) -> Edits:
    edits = decoded.get('edits')
    if edits is None:
      return {}
    if not isinstance(edits, dict):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageEdits::InvalidEdits',
          'The edits you provided could not be read. Please provide them as a JSON object.')
    return edits

  def parse_image_headers(self, decoded: DecodedRequest) -> Optional[dict[str, str]]:
    headers = decoded.get('headers')
    if not isinstance(headers, dict) or len(headers) == 0:
      return None
    return {str(k): str(v) for k, v in headers.items()}

  def get_secret(self) -> str:
    try:
      res = self.secrets_manager.get_secret_value(SecretId=self.settings.secrets_manager or '')
      secret = json.loads(res['SecretString'])
      return secret[self.settings.secret_key]
    except (ClientError, KeyError, TypeError, ValueError) as e:
      self.log.error({
          'message': 'failed to read signing secret',
          'reason': str(e),
      })
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR, 'SignatureValidationFailure',
          'Signature validation failed.')

  def validate_signature(self, event: ApiEvent) -> None:
    signature = get_query_param(event, 'signature')
    if signature is None:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'AuthorizationQueryParametersError',
          'Query-string requires the signature parameter.')

    path = event.get('path') or ''
    expected = hmac.new(self.get_secret().encode(), path.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature.encode(), expected.encode()):
      raise ImageHandlerError(
          HTTPStatus.FORBIDDEN, 'SignatureDoesNotMatch',
          'Signature does not match.')

  def validate_expiry(self, event: ApiEvent, now: datetime.datetime) -> Optional[int]:
    """Returns the seconds left before the request expires, if it can."""
    expires = get_query_param(event, 'expires')
    if expires is None:
      return None

    if not expires_re.match(expires):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageRequestExpiryFormat', 'Request has invalid expiry date.')
    try:
      exp = parser.isoparse(expires)
    except ValueError:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageRequestExpiryFormat', 'Request has invalid expiry date.')

    if exp < now:
      raise ImageHandlerError(HTTPStatus.BAD_REQUEST, 'ImageRequestExpired', 'Request has expired.')

    return int((exp - now).total_seconds())

  def get_original_image(self, bucket: str, key: S3Key) -> OriginalImage:
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
      body = res['Body'].read()
    except ClientError as e:
      self.log.warning({
          'message': 'failed to get original image',
          'bucket': bucket,
          'key': key,
          'reason': str(e),
      })
      raise ImageHandlerError.from_client_error(e)

    return OriginalImage.from_s3_object(res, body)

  def get_output_format(self, event: ApiEvent, decoded: DecodedRequest) -> Optional[str]:
    accept = get_event_header(event, 'accept')
    if self.settings.auto_webp and accept is not None and 'image/webp' in accept:
      return 'webp'
    return decoded.get('outputFormat')

  def setup(self, event: ApiEvent) -> RequestInfo:
    request_type = self.parse_request_type(event)
    decoded = self.decode_request(event)

    if self.settings.enable_signature:
      self.validate_signature(event)
    remaining = self.validate_expiry(event, get_now())

    bucket = self.parse_image_bucket(decoded)
    key = self.parse_image_key(decoded)
    edits = self.parse_image_edits(decoded)
    original = self.get_original_image(bucket, key)
    headers = self.parse_image_headers(decoded)

    output_format: Optional[str] = None
    if original.content_type == SVG_CONTENT_TYPE and len(edits) != 0 and 'toFormat' not in edits:
      output_format = 'png'

    negotiated = self.get_output_format(event, decoded)
    if 'toFormat' in edits:
      output_format = str(edits['toFormat'])
    elif negotiated is not None:
      output_format = negotiated

    content_type = original.content_type
    if output_format is not None:
      fmt = normalize_format(output_format)
      if fmt is None:
        raise ImageHandlerError(
            HTTPStatus.BAD_REQUEST, 'ImageEdits::UnsupportedFormat',
            f'The output format "{output_format}" is not supported.')
      output_format = fmt
      content_type = content_type_of(fmt)

    cache_control = original.cache_control
    if remaining is not None:
      m = max_age_re.search(cache_control)
      max_age = remaining if m is None else min(int(m[1]), remaining)
      cache_control = f'max-age={max_age},public'

    return RequestInfo(
        request_type=request_type,
        bucket=bucket,
        key=key,
        edits=edits,
        original_image=original.body,
        content_type=content_type,
        cache_control=cache_control,
        expires=original.expires,
        last_modified=original.last_modified,
        headers=headers,
        output_format=output_format)

