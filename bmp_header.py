import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Tuple

logger = logging.getLogger(__name__)

# 文件头 14 字节 + 信息头 40 字节, 全部小端
FILE_HEADER_FORMAT = '<2sIHHI'
INFO_HEADER_FORMAT = '<IiiHHIIiiII'
FILE_HEADER_SIZE = struct.calcsize(FILE_HEADER_FORMAT)
HEADER_SIZE = FILE_HEADER_SIZE + struct.calcsize(INFO_HEADER_FORMAT)

BMP_SIGNATURE = b'BM'
SUPPORTED_BPP = 24
COMPRESSION_NONE = 0
# 宽高上限
MAX_DIMENSION = 65535


class BMPError(Exception):
    """BMP文件处理异常"""
    pass


class TruncatedDataError(BMPError):
    """数据长度不足"""


class TruncatedHeaderError(TruncatedDataError):
    """文件头不足54字节"""


class TruncatedPixelDataError(TruncatedDataError):
    """像素数据不完整或越界"""


class UnsupportedFormatError(BMPError):
    """签名/位深/压缩方式不受支持"""


class InvalidGeometryError(BMPError):
    """宽高非法"""


class BMPIOError(BMPError):
    """底层读写失败"""


@dataclass(frozen=True)
class FileHeader:
    signature: bytes
    file_size: int
    reserved1: int
    reserved2: int
    pixel_data_offset: int


@dataclass(frozen=True)
class InfoHeader:
    header_size: int
    width: int
    height: int
    color_planes: int
    bits_per_pixel: int
    compression_method: int
    image_data_size: int
    horizontal_resolution: int
    vertical_resolution: int
    palette_color_count: int
    important_color_count: int


def parse_headers(data: bytes) -> Tuple[FileHeader, InfoHeader]:
    """按固定偏移解析前54字节, 不做任何校验"""
    if len(data) < HEADER_SIZE:
        raise TruncatedHeaderError(
            f'文件头不完整: 需要 {HEADER_SIZE} 字节, 实际 {len(data)} 字节')
    file_header = FileHeader(*struct.unpack_from(FILE_HEADER_FORMAT, data, 0))
    info_header = InfoHeader(*struct.unpack_from(INFO_HEADER_FORMAT, data, FILE_HEADER_SIZE))
    return file_header, info_header


def read_headers(file: BinaryIO) -> Tuple[FileHeader, InfoHeader]:
    """从当前位置读取54字节并解析"""
    return parse_headers(file.read(HEADER_SIZE))


def validate_headers(file_header: FileHeader, info_header: InfoHeader) -> None:
    """
    检查头部是否是本工具能处理的 24 位无压缩自底向上位图.

    不通过时抛出 UnsupportedFormatError 或 InvalidGeometryError,
    避免把垃圾几何信息带进缓冲区长度计算.
    """
    if file_header.signature != BMP_SIGNATURE:
        raise UnsupportedFormatError(f'不是有效的BMP文件 (签名 {file_header.signature!r})')
    if info_header.bits_per_pixel != SUPPORTED_BPP:
        raise UnsupportedFormatError(f'仅支持24位BMP文件 (当前 {info_header.bits_per_pixel} 位)')
    if info_header.compression_method != COMPRESSION_NONE:
        raise UnsupportedFormatError(f'不支持压缩的BMP (compression={info_header.compression_method})')

    width, height = info_header.width, info_header.height
    if width <= 0 or height == 0:
        raise InvalidGeometryError(f'图像尺寸非法: {width}x{height}')
    if height < 0:
        # 负高度表示自顶向下存储
        raise UnsupportedFormatError(f'不支持自顶向下存储的BMP (height={height})')
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise InvalidGeometryError(f'图像尺寸过大: {width}x{height}')

    logger.debug('头部校验通过: %dx%d, 像素偏移 %d',
                 width, height, file_header.pixel_data_offset)
