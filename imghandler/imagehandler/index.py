import base64
import dataclasses
import math
import re
import time
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional

from botocore.exceptions import ClientError
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client
from pyvips import Extend, Image  # type: ignore

from imghandler.config import Settings
from imghandler.errors import ImageHandlerError
from imghandler.formats import FORMAT_SUFFIXES, format_from_content_type
from imghandler.imagerequest.index import RequestInfo
from imghandler.typing import Edits, S3Key

# Lambda response payloads are capped at 6 MB.
LAMBDA_PAYLOAD_LIMIT = 6 * 1024 * 1024

DEFAULT_MIN_CONFIDENCE = 75.0
DEFAULT_MODERATION_BLUR = 50.0
MIN_BLUR_SIGMA = 0.3
MAX_BLUR_SIGMA = 1000.0

QUALITY_FORMATS = ['jpeg', 'png', 'webp', 'tiff', 'heif', 'avif']

LOADER_FORMATS = {
    'jpegload_buffer': 'jpeg',
    'pngload_buffer': 'png',
    'webpload_buffer': 'webp',
    'tiffload_buffer': 'tiff',
    'heifload_buffer': 'heif',
    'gifload_buffer': 'gif',
    'svgload_buffer': 'png',
}

percent_re = re.compile(r'^(-?\d+(?:\.\d+)?)p$')
zero_to_hundred_re = re.compile(r'^(100|[1-9]?[0-9])$')


class Fit(Enum):
  COVER = 'cover'
  CONTAIN = 'contain'
  FILL = 'fill'
  INSIDE = 'inside'
  OUTSIDE = 'outside'


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.width, image.height)


@dataclasses.dataclass(eq=True, frozen=True)
class Area:
  x: int
  y: int
  width: int
  height: int

  @property
  def right(self) -> int:
    return self.x + self.width

  @property
  def bottom(self) -> int:
    return self.y + self.height

  def is_in(self, frame: Size) -> bool:
    return (
        0 <= self.x and 0 <= self.y and 0 < self.width and 0 < self.height and
        self.right <= frame.width and self.bottom <= frame.height)

  @classmethod
  def centered(cls, frame: Size, inner: Size) -> 'Area':
    return cls((frame.width - inner.width) // 2, (frame.height - inner.height) // 2, inner.width,
               inner.height)


@dataclasses.dataclass(eq=True, frozen=True)
class ResizePlan:
  scaled: Size
  target: Size


def round_div(a: int, b: int) -> int:
  return max(1, (2 * a + b) // (2 * b))


def calc_resize(
    original: Size,
    width: Optional[int],
    height: Optional[int],
    fit: Fit,
) -> Optional[ResizePlan]:
  match (width, height):
    case (None, None):
      return None
    case (int() as w, None):
      size = Size(w, round_div(original.height * w, original.width))
      return ResizePlan(size, size)
    case (None, int() as h):
      size = Size(round_div(original.width * h, original.height), h)
      return ResizePlan(size, size)
    case (int() as w, int() as h):
      box = Size(w, h)
    case _:
      raise Exception('system error')

  # Compare aspect ratios without division: positive when the original is wider than the box.
  cmp = original.width * box.height - original.height * box.width
  by_width = Size(box.width, round_div(original.height * box.width, original.width))
  by_height = Size(round_div(original.width * box.height, original.height), box.height)

  match fit:
    case Fit.FILL:
      return ResizePlan(box, box)
    case Fit.INSIDE:
      size = by_width if 0 < cmp else by_height
      return ResizePlan(size, size)
    case Fit.CONTAIN:
      return ResizePlan(by_width if 0 < cmp else by_height, box)
    case Fit.OUTSIDE:
      size = by_height if 0 < cmp else by_width
      return ResizePlan(size, size)
    case Fit.COVER:
      return ResizePlan(by_height if 0 < cmp else by_width, box)
    case _:
      raise Exception('system error')


def parse_dimension(value: Any) -> Optional[int]:
  if value is None or value == '' or value == 0:
    return None

  try:
    if isinstance(value, bool):
      raise ValueError(value)
    n = round(float(value))
  except (TypeError, ValueError, OverflowError):
    n = 0

  if n <= 0:
    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST, 'Resize::InvalidDimension',
        f'The resize dimension you provided is invalid: {value}.')
  return n


def parse_number(value: Any, default: float, code: str) -> float:
  if value is None:
    return default

  try:
    if isinstance(value, bool):
      raise ValueError(value)
    n = float(value)
  except (TypeError, ValueError):
    n = math.nan

  if not math.isfinite(n):
    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST, code, f'The value you provided is invalid: {value}.')
  return n


def parse_offset(value: Any, frame: int, inner: int) -> Optional[int]:
  """Resolves an overlay offset in pixels.

  Values may be pixel counts or percentages of the frame written as `<n>p`.
  Negative values are measured from the far edge.
  """
  if value is None:
    return None

  m = percent_re.match(value) if isinstance(value, str) else None
  try:
    if m is not None:
      n = float(m[1]) * frame / 100
    elif isinstance(value, bool):
      return None
    else:
      n = float(value)
  except (TypeError, ValueError):
    return None

  if n < 0:
    n = frame + n - inner
  return int(n)


def parse_background(image: Image, value: Any) -> list[float]:
  if isinstance(value, dict):
    rgb = [parse_number(value.get(c), 0, 'Resize::InvalidBackground') for c in ['r', 'g', 'b']]
    alpha = parse_number(value.get('alpha'), 1, 'Resize::InvalidBackground') * 255
  else:
    rgb = [0.0, 0.0, 0.0]
    alpha = 255.0

  colour_bands = image.bands - 1 if image.hasalpha() else image.bands
  colour = (rgb + [0.0] * colour_bands)[:colour_bands]
  return colour + [alpha] if image.hasalpha() else colour


def map_colour(image: Image, fn: Any) -> Image:
  if image.hasalpha():
    return fn(image[:image.bands - 1]).bandjoin(image[image.bands - 1])
  return fn(image)


def with_alpha(image: Image) -> Image:
  if image.hasalpha():
    return image
  return image.bandjoin(255)


def resize_image(image: Image, plan: ResizePlan, background: list[float]) -> Image:
  image = image.resize(plan.scaled.width / image.width, vscale=plan.scaled.height / image.height)

  actual = Size.from_image(image)
  target = plan.target
  if target.width < actual.width or target.height < actual.height:
    crop = Area.centered(
        actual, Size(min(actual.width, target.width), min(actual.height, target.height)))
    image = image.extract_area(crop.x, crop.y, crop.width, crop.height)
    actual = Size.from_image(image)

  if actual != target:
    pos = Area.centered(target, actual)
    image = image.embed(
        pos.x,
        pos.y,
        target.width,
        target.height,
        extend=Extend.BACKGROUND,
        background=background)

  return image


def ellipse_mask(size: Size, cx: float, cy: float, rx: float, ry: float) -> Image:
  xyz = Image.xyz(size.width, size.height)
  dx = (xyz[0] - cx) / rx
  dy = (xyz[1] - cy) / ry
  return (dx * dx + dy * dy) <= 1


def save_options(edits: Edits, fmt: str) -> dict[str, Any]:
  options = edits.get(fmt)
  if fmt not in QUALITY_FORMATS or not isinstance(options, dict) or 'quality' not in options:
    return {}

  quality = int(parse_number(options['quality'], 80, 'ImageEdits::InvalidQuality'))
  if fmt == 'png':
    return {'palette': True, 'Q': quality}
  return {'Q': quality}


class ImageHandler:
  """Applies edits to an original image with libvips."""

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      s3: S3Client,
      rekognition: RekognitionClient,
  ):
    self.log = log
    self.settings = settings
    self.s3 = s3
    self.rekognition = rekognition

  def load(self, request: RequestInfo) -> Image:
    image = Image.new_from_buffer(request.original_image, '')
    if 'rotate' in request.edits and request.edits['rotate'] is None:
      return image
    return image.autorot()

  def output_format(self, request: RequestInfo, image: Image) -> str:
    if request.output_format is not None:
      return request.output_format

    fmt = format_from_content_type(request.content_type)
    if fmt is not None:
      return fmt

    loader = image.get('vips-loader') if image.get_typeof('vips-loader') != 0 else ''
    return LOADER_FORMATS.get(loader, 'png')

  def process(self, request: RequestInfo) -> str:
    if len(request.edits) == 0 and request.output_format is None:
      ret = base64.b64encode(request.original_image).decode()
    else:
      start_ns = time.time_ns()

      image = self.load(request)
      fmt = self.output_format(request, image)
      image = self.apply_edits(image, request.edits)
      buf: bytes = image.write_to_buffer(FORMAT_SUFFIXES[fmt], **save_options(request.edits, fmt))

      self.log.debug({
          'message': 'processed',
          'key': request.key,
          'format': fmt,
          'size': (image.width, image.height),
          'img_size': len(buf),
          'vips_us': (time.time_ns() - start_ns) // 1000,
      })
      ret = base64.b64encode(buf).decode()

    if LAMBDA_PAYLOAD_LIMIT < len(ret):
      raise ImageHandlerError(
          HTTPStatus.REQUEST_ENTITY_TOO_LARGE, 'TooLargeImageException',
          'The converted image is too large to return.')

    return ret

  def apply_edits(self, image: Image, edits: Edits) -> Image:
    for key, value in edits.items():
      match key:
        case 'resize':
          image = self.resize(image, value)
        case 'toFormat' | 'jpeg' | 'png' | 'webp' | 'tiff' | 'heif' | 'avif' | 'gif':
          # Applied when encoding.
          pass
        case 'grayscale' | 'greyscale':
          if value:
            image = map_colour(image, lambda i: i.colourspace('b-w'))
        case 'flip':
          if value:
            image = image.flipver()
        case 'flop':
          if value:
            image = image.fliphor()
        case 'negate':
          if value:
            image = map_colour(image, lambda i: i.invert())
        case 'normalise' | 'normalize':
          if value:
            image = map_colour(image, self.normalise)
        case 'sharpen':
          if value:
            image = image.sharpen()
        case 'blur':
          if value:
            sigma = 1.0 if value is True else parse_number(value, 1.0, 'Blur::InvalidSigma')
            if not MIN_BLUR_SIGMA <= sigma <= MAX_BLUR_SIGMA:
              raise ImageHandlerError(
                  HTTPStatus.BAD_REQUEST, 'Blur::InvalidSigma',
                  f'The blur sigma must be between {MIN_BLUR_SIGMA} and {MAX_BLUR_SIGMA}.')
            image = image.gaussblur(sigma)
        case 'rotate':
          if value is not None:
            image = self.rotate(image, value)
        case 'extract' | 'crop':
          image = self.crop(image, value)
        case 'overlayWith':
          image = self.overlay(image, value)
        case 'smartCrop':
          image = self.smart_crop(image, value)
        case 'roundCrop':
          image = self.round_crop(image, value)
        case 'contentModeration':
          image = self.moderate(image, value)
        case _:
          self.log.warning({
              'message': 'unsupported edit ignored',
              'edit': key,
          })

    return image

  def resize(self, image: Image, value: Any) -> Image:
    if not isinstance(value, dict):
      return image

    try:
      fit = Fit(value.get('fit', Fit.COVER.value))
    except ValueError:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'Resize::InvalidFit', f'Unknown resize fit: {value.get("fit")}.')

    plan = calc_resize(
        Size.from_image(image), parse_dimension(value.get('width')),
        parse_dimension(value.get('height')), fit)
    if plan is None:
      return image

    return resize_image(image, plan, parse_background(image, value.get('background')))

  @staticmethod
  def normalise(image: Image) -> Image:
    lo = image.min()
    hi = image.max()
    if hi <= lo:
      return image
    return ((image - lo) * (255.0 / (hi - lo))).cast('uchar')

  def rotate(self, image: Image, value: Any) -> Image:
    angle = parse_number(value, 0, 'Rotate::InvalidAngle') % 360
    if angle == 0:
      return image
    if angle in [90, 180, 270]:
      return image.rot(f'd{int(angle)}')
    return image.rotate(angle)

  def crop(self, image: Image, value: Any) -> Image:
    if not isinstance(value, dict):
      value = {}
    area = Area(
        int(parse_number(value.get('left'), 0, 'Crop::AreaOutOfBounds')),
        int(parse_number(value.get('top'), 0, 'Crop::AreaOutOfBounds')),
        int(parse_number(value.get('width'), image.width, 'Crop::AreaOutOfBounds')),
        int(parse_number(value.get('height'), image.height, 'Crop::AreaOutOfBounds')))

    if not area.is_in(Size.from_image(image)):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'Crop::AreaOutOfBounds',
          'The cropping area you provided exceeds the boundaries of the original image. '
          'Please try choosing a correct cropping value.')

    return image.extract_area(area.x, area.y, area.width, area.height)

  def get_overlay_image(self, bucket: str, key: S3Key) -> bytes:
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
      return res['Body'].read()
    except ClientError as e:
      self.log.warning({
          'message': 'failed to get overlay image',
          'bucket': bucket,
          'key': key,
          'reason': str(e),
      })
      raise ImageHandlerError.from_client_error(e)

  def overlay(self, image: Image, value: Any) -> Image:
    if not isinstance(value, dict) or 'key' not in value:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'OverlayWith::InvalidOverlay',
          'The overlay you provided must specify at least a key.')

    allowed = self.settings.allowed_source_buckets()
    bucket = value.get('bucket', allowed[0])
    if bucket not in allowed:
      raise ImageHandlerError(
          HTTPStatus.FORBIDDEN, 'ImageBucket::CannotAccessBucket',
          'The overlay bucket you specified could not be accessed. '
          'Please check that the bucket is specified in your SOURCE_BUCKETS.')

    overlay = Image.new_from_buffer(self.get_overlay_image(bucket, S3Key(str(value['key']))), '')
    frame = Size.from_image(image)

    w_ratio = str(value.get('wRatio', ''))
    h_ratio = str(value.get('hRatio', ''))
    width = frame.width * int(w_ratio) // 100 if zero_to_hundred_re.match(w_ratio) else 0
    height = frame.height * int(h_ratio) // 100 if zero_to_hundred_re.match(h_ratio) else 0
    plan = calc_resize(
        Size.from_image(overlay), width if 0 < width else None, height if 0 < height else None,
        Fit.INSIDE)
    if plan is not None:
      overlay = resize_image(overlay, plan, parse_background(overlay, None))

    alpha_str = str(value.get('alpha', ''))
    alpha = int(alpha_str) if zero_to_hundred_re.match(alpha_str) else 0
    overlay = with_alpha(overlay)
    if 0 < alpha:
      factors = [1.0] * (overlay.bands - 1) + [1 - alpha / 100]
      overlay = (overlay * factors).cast('uchar')

    inner = Size.from_image(overlay)
    center = Area.centered(frame, inner)
    options = value.get('options')
    if not isinstance(options, dict):
      options = {}
    left = parse_offset(options.get('left'), frame.width, inner.width)
    top = parse_offset(options.get('top'), frame.height, inner.height)

    return image.composite2(
        overlay,
        'over',
        x=center.x if left is None else left,
        y=center.y if top is None else top)

  def smart_crop(self, image: Image, value: Any) -> Image:
    if not isinstance(value, dict):
      value = {}
    face_index = int(parse_number(value.get('faceIndex'), 0, 'SmartCrop::FaceIndexOutOfRange'))
    padding = parse_number(value.get('padding'), 0, 'SmartCrop::PaddingOutOfBounds')

    try:
      res = self.rekognition.detect_faces(Image={'Bytes': image.write_to_buffer('.jpg')})
    except ClientError as e:
      self.log.error({
          'message': 'failed to detect faces',
          'reason': str(e),
      })
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR, 'SmartCrop::Error',
          'Smart Crop could not be applied to your image. Please contact the system administrator.')

    faces = res.get('FaceDetails', [])
    if len(faces) == 0:
      box: dict[str, float] = {'Left': 0.0, 'Top': 0.0, 'Width': 1.0, 'Height': 1.0}
    elif face_index < 0 or len(faces) <= face_index:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'SmartCrop::FaceIndexOutOfRange',
          'You have provided a FaceIndex value that exceeds the length of the zero-based '
          'detectedFaces array. Please specify a value that is in-range.')
    else:
      b = faces[face_index].get('BoundingBox', {})
      box = {
          'Left': max(0.0, b.get('Left', 0.0)),
          'Top': max(0.0, b.get('Top', 0.0)),
          'Width': min(1.0, b.get('Width', 1.0)),
          'Height': min(1.0, b.get('Height', 1.0)),
      }

    frame = Size.from_image(image)
    area = Area(
        math.floor(box['Left'] * frame.width - padding),
        math.floor(box['Top'] * frame.height - padding),
        math.floor(box['Width'] * frame.width + padding * 2),
        math.floor(box['Height'] * frame.height + padding * 2))

    if not area.is_in(frame):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'SmartCrop::PaddingOutOfBounds',
          'The padding value you provided exceeds the boundaries of the original image. '
          'Please try choosing a smaller value.')

    return image.extract_area(area.x, area.y, area.width, area.height)

  def round_crop(self, image: Image, value: Any) -> Image:
    if not isinstance(value, dict):
      value = {}
    frame = Size.from_image(image)
    radius = min(frame.width, frame.height) / 2
    rx = parse_number(value.get('rx'), radius, 'RoundCrop::InvalidParameter')
    ry = parse_number(value.get('ry'), radius, 'RoundCrop::InvalidParameter')
    cx = parse_number(value.get('left'), frame.width / 2, 'RoundCrop::InvalidParameter')
    cy = parse_number(value.get('top'), frame.height / 2, 'RoundCrop::InvalidParameter')
    if rx <= 0 or ry <= 0:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'RoundCrop::InvalidParameter',
          'Round crop radii must be positive.')

    mask = ellipse_mask(frame, cx, cy, rx, ry)
    if image.hasalpha():
      alpha = (image[image.bands - 1] * (mask / 255)).cast('uchar')
      return image[:image.bands - 1].bandjoin(alpha)
    return image.bandjoin(mask)

  def moderate(self, image: Image, value: Any) -> Image:
    if not isinstance(value, dict):
      value = {}
    min_confidence = parse_number(
        value.get('minConfidence'), DEFAULT_MIN_CONFIDENCE, 'Rekognition::InvalidMinConfidence')

    try:
      res = self.rekognition.detect_moderation_labels(
          Image={'Bytes': image.write_to_buffer('.jpg')}, MinConfidence=min_confidence)
    except ClientError as e:
      self.log.error({
          'message': 'failed to detect moderation labels',
          'reason': str(e),
      })
      error = e.response.get('Error', {})
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR, 'Rekognition::DetectModerationLabelsError',
          error.get('Message', str(e)))

    labels = res.get('ModerationLabels', [])
    wanted = value.get('moderationLabels')
    if isinstance(wanted, list) and 0 < len(wanted):
      matched = [
          label for label in labels
          if label.get('Name') in wanted or label.get('ParentName') in wanted
      ]
    else:
      matched = labels

    self.log.debug({
        'message': 'moderation labels',
        'labels': [label.get('Name') for label in labels],
        'matched': [label.get('Name') for label in matched],
    })

    if len(matched) == 0:
      return image

    sigma = parse_number(value.get('blur'), DEFAULT_MODERATION_BLUR, 'Rekognition::InvalidBlur')
    if not MIN_BLUR_SIGMA <= sigma <= MAX_BLUR_SIGMA:
      sigma = DEFAULT_MODERATION_BLUR
    return image.gaussblur(sigma)
