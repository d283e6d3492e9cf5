import dataclasses
import os
from http import HTTPStatus
from typing import Mapping, Optional

from imghandler.errors import ImageHandlerError

YES = 'Yes'


def is_blank(s: Optional[str]) -> bool:
  return s is None or s.strip() == ''


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  region: str
  source_buckets: Optional[str]
  cors_enabled: bool
  cors_origin: Optional[str]
  enable_default_fallback_image: bool
  default_fallback_image_bucket: Optional[str]
  default_fallback_image_key: Optional[str]
  auto_webp: bool
  enable_signature: bool
  secrets_manager: Optional[str]
  secret_key: Optional[str]

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
    env = os.environ if environ is None else environ
    return cls(
        region=env.get('AWS_REGION', 'us-east-1'),
        source_buckets=env.get('SOURCE_BUCKETS'),
        cors_enabled=env.get('CORS_ENABLED') == YES,
        cors_origin=env.get('CORS_ORIGIN'),
        enable_default_fallback_image=env.get('ENABLE_DEFAULT_FALLBACK_IMAGE') == YES,
        default_fallback_image_bucket=env.get('DEFAULT_FALLBACK_IMAGE_BUCKET'),
        default_fallback_image_key=env.get('DEFAULT_FALLBACK_IMAGE_KEY'),
        auto_webp=env.get('AUTO_WEBP') == YES,
        enable_signature=env.get('ENABLE_SIGNATURE') == YES,
        secrets_manager=env.get('SECRETS_MANAGER'),
        secret_key=env.get('SECRET_KEY'))

  def allowed_source_buckets(self) -> list[str]:
    buckets = [] if self.source_buckets is None else [
        b.strip() for b in self.source_buckets.split(',') if not is_blank(b)
    ]
    if len(buckets) == 0:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'GetAllowedSourceBuckets::NoSourceBuckets',
          'The SOURCE_BUCKETS variable could not be read. '
          'Please check that it is not empty and contains at least one source bucket, '
          'or multiple buckets separated by commas. '
          'Spaces can be provided between commas and bucket names, '
          'these will be automatically parsed out when decoding.')

    return buckets

  @property
  def fallback_enabled(self) -> bool:
    return (
        self.enable_default_fallback_image and not is_blank(self.default_fallback_image_bucket) and
        not is_blank(self.default_fallback_image_key))
