import datetime
import io
import logging
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Generator

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber
from pyvips import Image  # type: ignore

from imghandler.config import Settings
from imghandler.log import MyJsonFormatter

REGION = 'us-east-1'
SOURCE_BUCKET = 'source-bucket'
OTHER_BUCKET = 'other-bucket'

JPEG_MIME = 'image/jpeg'
PNG_MIME = 'image/png'
WEBP_MIME = 'image/webp'

DUMMY_DATETIME = datetime.datetime(2000, 1, 1, tzinfo=datetime.timezone.utc)
DUMMY_HTTP_DATE = 'Sat, 01 Jan 2000 00:00:00 GMT'

LOADER_MAP = {
    'jpegload_buffer': JPEG_MIME,
    'pngload_buffer': PNG_MIME,
    'webpload_buffer': WEBP_MIME,
}


def new_client(service: str) -> Any:
  return boto3.client(
      service,
      region_name=REGION,
      aws_access_key_id='testing',
      aws_secret_access_key='testing')


def make_image(width: int, height: int, suffix: str = '.jpg', value: int = 128) -> bytes:
  image = (Image.black(width, height, bands=3) + value).cast('uchar')
  return image.write_to_buffer(suffix)


def make_split_image(width: int, height: int, suffix: str = '.png') -> bytes:
  """Black left half, white right half."""
  left = Image.black(width // 2, height, bands=3)
  right = (Image.black(width - width // 2, height, bands=3) + 255).cast('uchar')
  return left.join(right, 'horizontal').write_to_buffer(suffix)


def s3_object(
    body: bytes,
    content_type: str = JPEG_MIME,
    **kwargs: Any,
) -> dict[str, Any]:
  return {
      'Body': StreamingBody(io.BytesIO(body), len(body)),
      'ContentLength': len(body),
      'ContentType': content_type,
      'LastModified': DUMMY_DATETIME,
      **kwargs,
  }


def add_get_object(stubber: Stubber, bucket: str, key: str, response: dict[str, Any]) -> None:
  stubber.add_response('get_object', response, {'Bucket': bucket, 'Key': key})


def add_no_such_key(stubber: Stubber, bucket: str, key: str) -> None:
  stubber.add_client_error(
      'get_object',
      service_error_code='NoSuchKey',
      service_message='The specified key does not exist.',
      http_status_code=404,
      expected_params={
          'Bucket': bucket,
          'Key': key
      })


@pytest.fixture
def logger(tmp_path: Path) -> Generator[Logger, None, None]:
  log = logging.getLogger(f'{__name__}.{tmp_path.name}')
  log.setLevel(logging.DEBUG)
  log.propagate = False

  log_file = open(tmp_path / 'test.log', 'w')
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(log_file)
  log.addHandler(log_handler)

  yield log

  log.removeHandler(log_handler)
  log_file.close()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:

  def fn(**env: str) -> Settings:
    return Settings.from_env({
        'AWS_REGION': REGION,
        'SOURCE_BUCKETS': f'{SOURCE_BUCKET}, {OTHER_BUCKET}',
        **env,
    })

  return fn


def stubbed(service: str) -> Generator[Stubber, None, None]:
  stubber = Stubber(new_client(service))
  stubber.activate()
  yield stubber
  stubber.deactivate()


@pytest.fixture
def s3_stub() -> Generator[Stubber, None, None]:
  yield from stubbed('s3')


@pytest.fixture
def rekognition_stub() -> Generator[Stubber, None, None]:
  yield from stubbed('rekognition')


@pytest.fixture
def secrets_stub() -> Generator[Stubber, None, None]:
  yield from stubbed('secretsmanager')
