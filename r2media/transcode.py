import dataclasses
from enum import Enum
from logging import Logger
from typing import Optional

import pyvips
from pyvips import Image  # type: ignore
from pyvips import Size as VipsSize  # type: ignore


class UnsupportedFormat(Exception):
  pass


class InvalidImage(Exception):
  pass


class ImageType(Enum):
  JPEG = 'jpegload'
  PNG = 'pngload'
  GIF = 'gifload'
  WEBP = 'webpload'

  @classmethod
  def from_loader(cls, loader: str) -> 'ImageType':
    name = loader.split('_', 1)[0]
    for t in cls:
      if t.value == name:
        return t
    raise UnsupportedFormat(f'unsupported image type: {loader}')

  def has_alpha_canvas(self) -> bool:
    return self in (ImageType.PNG, ImageType.GIF)


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


def calc_dimensions(original: Size, width: Optional[int], height: Optional[int]) -> Size:
  if width is None and height is None:
    return original

  if width is not None and height is not None:
    return Size(width, height)

  aspect_ratio = original.width / original.height

  if width is not None:
    return Size(width, max(1, int(width / aspect_ratio)))

  assert height is not None
  return Size(max(1, int(height * aspect_ratio)), height)


def png_compression(quality: int) -> int:
  level = round(9 - (quality / 100) * 9)
  return max(0, min(9, level))


class ImageTranscoder:

  def __init__(self, log: Logger):
    self.log = log

  def open(self, source: str) -> tuple[ImageType, Size]:
    try:
      image: Image = Image.new_from_file(source)
      loader: str = image.get('vips-loader')
    except pyvips.Error as e:
      raise InvalidImage(f'invalid image: {source}: {e}')

    return ImageType.from_loader(loader), Size.from_image(image)

  def resize(
      self,
      source: str,
      dest: str,
      width: Optional[int],
      height: Optional[int],
      quality: int,
  ) -> Size:
    image_type, original = self.open(source)
    target = calc_dimensions(original, width, height)

    try:
      image: Image = Image.thumbnail(
          source, target.width, height=target.height, size=VipsSize.FORCE)

      if image_type.has_alpha_canvas() and not image.hasalpha():
        image = image.addalpha()

      match image_type:
        case ImageType.JPEG:
          image.jpegsave(dest, Q=quality)
        case ImageType.PNG:
          image.pngsave(dest, compression=png_compression(quality))
        case ImageType.GIF:
          image.gifsave(dest)
        case ImageType.WEBP:
          image.webpsave(dest, Q=quality)
    except pyvips.Error as e:
      raise InvalidImage(f'failed to transcode: {source}: {e}')

    self.log.debug({
        'message': 'resized',
        'type': image_type.name,
        'original': dataclasses.asdict(original),
        'target': dataclasses.asdict(target),
        'quality': quality,
    })

    return target
