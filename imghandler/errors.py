from http import HTTPStatus
from typing import Any

from botocore.exceptions import ClientError


class ImageHandlerError(Exception):
  status: int
  code: str
  message: str

  def __init__(self, status: int, code: str, message: str):
    super().__init__(message)
    self.status = int(status)
    self.code = code
    self.message = message

  def to_dict(self) -> dict[str, Any]:
    return {
        'status': self.status,
        'code': self.code,
        'message': self.message,
    }

  @classmethod
  def from_client_error(cls, exception: ClientError) -> 'ImageHandlerError':
    error = exception.response.get('Error', {})
    code = error.get('Code', 'InternalError')
    message = error.get('Message', str(exception))
    if is_not_found_client_error(exception):
      return cls(HTTPStatus.NOT_FOUND, 'NoSuchKey', message)

    status = exception.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
    if status is None or status < 400:
      status = HTTPStatus.INTERNAL_SERVER_ERROR
    return cls(status, code, message)


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']
