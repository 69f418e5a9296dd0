import io
import logging
import os
import tempfile
from typing import BinaryIO, Iterator, Optional, Tuple

import numpy as np

from bmp_header import (
    SUPPORTED_BPP,
    BMPIOError,
    FileHeader,
    InfoHeader,
    TruncatedPixelDataError,
    read_headers,
    validate_headers,
)

logger = logging.getLogger(__name__)

# 标准 24 位排布: 每像素 3 字节, 只有行尾补齐到 4 字节
PIXEL_STRIDE_PACKED = 3
# 旧版工具按 x*4 取像素, 需要逐位兼容旧输出时使用
PIXEL_STRIDE_LEGACY = 4
PIXEL_STRIDES = (PIXEL_STRIDE_PACKED, PIXEL_STRIDE_LEGACY)

DEFAULT_BATCH_SIZE = 1024

# ITU-R BT.601 标准系数, 用单精度逐项计算以保证和旧输出逐位一致
Y_R, Y_G, Y_B = np.float32(0.299), np.float32(0.587), np.float32(0.114)
U_R, U_G, U_B = np.float32(-0.14713), np.float32(0.28886), np.float32(0.436)
V_R, V_G, V_B = np.float32(0.615), np.float32(0.51499), np.float32(0.10001)
CHROMA_BIAS = np.float32(0.5)
CHANNEL_MAX = np.float32(255.0)


def row_stride(width: int, bits_per_pixel: int = SUPPORTED_BPP) -> int:
    """每行占用字节数, 补齐到 4 字节"""
    return ((width * bits_per_pixel + 31) // 32) * 4


def rgb_to_yuv_batch(rgb_array: np.ndarray) -> np.ndarray:
    """
    批量RGB转YUV (N×3 uint8 -> N×3 uint8).

    各通道先归一化到 [0,1], 套用 BT.601 矩阵, UV 加 0.5 偏置后
    放大回 [0,255], 截断 (不是四舍五入) 为 8 位.
    """
    rgb = np.asarray(rgb_array, dtype=np.uint8).reshape(-1, 3)
    norm = rgb.astype(np.float32) / CHANNEL_MAX
    r, g, b = norm[:, 0], norm[:, 1], norm[:, 2]

    yuv = np.empty(rgb.shape, dtype=np.float32)
    yuv[:, 0] = (Y_R * r + Y_G * g + Y_B * b) * CHANNEL_MAX
    yuv[:, 1] = (U_R * r - U_G * g + U_B * b + CHROMA_BIAS) * CHANNEL_MAX
    yuv[:, 2] = (V_R * r - V_G * g - V_B * b + CHROMA_BIAS) * CHANNEL_MAX
    return np.clip(yuv, 0, 255).astype(np.uint8)


def rgb_to_yuv(r: int, g: int, b: int) -> Tuple[int, int, int]:
    """单像素RGB转YUV"""
    y, u, v = rgb_to_yuv_batch(np.array([[r, g, b]], dtype=np.uint8))[0]
    return int(y), int(u), int(v)


def required_buffer_size(width: int, height: int, pixel_stride: int = PIXEL_STRIDE_PACKED) -> int:
    """按给定像素步长取完所有像素需要的最小缓冲区长度"""
    stride = row_stride(width)
    return (height - 1) * stride + (width - 1) * pixel_stride + 3


def decode_bitmap(file: BinaryIO) -> Tuple[FileHeader, InfoHeader, bytes]:
    """解析并校验头部, 再一次性读入 rowStride×height 字节的像素数据"""
    file_header, info_header = read_headers(file)
    validate_headers(file_header, info_header)

    size = row_stride(info_header.width, info_header.bits_per_pixel) * info_header.height
    # 先按流长度检查, 不为伪造的尺寸分配大缓冲区
    available = max(0, file.seek(0, io.SEEK_END) - file_header.pixel_data_offset)
    if available < size:
        raise TruncatedPixelDataError(
            f'像素数据不完整: 偏移 {file_header.pixel_data_offset} 处需要 {size} 字节, '
            f'实际 {available} 字节')

    file.seek(file_header.pixel_data_offset)
    pixels = file.read(size)
    if len(pixels) < size:
        raise TruncatedPixelDataError(
            f'像素数据不完整: 偏移 {file_header.pixel_data_offset} 处需要 {size} 字节, '
            f'实际 {len(pixels)} 字节')
    return file_header, info_header, pixels


def iter_display_rows(pixels: bytes, width: int, height: int,
                      pixel_stride: int = PIXEL_STRIDE_PACKED) -> Iterator[np.ndarray]:
    """按显示顺序 (自顶向下) 逐行产出 width×3 的 RGB 数组"""
    if pixel_stride not in PIXEL_STRIDES:
        raise ValueError(f'像素步长只能是 {PIXEL_STRIDES}, 而不是 {pixel_stride}')

    needed = required_buffer_size(width, height, pixel_stride)
    if needed > len(pixels):
        raise TruncatedPixelDataError(
            f'像素索引越界: 步长 {pixel_stride} 需要 {needed} 字节, 缓冲区只有 {len(pixels)} 字节')

    stride = row_stride(width)
    buffer = np.frombuffer(pixels, dtype=np.uint8)
    # 每个像素 B, G, R 三个字节在行内的偏移
    columns = (np.arange(width) * pixel_stride)[:, None] + np.arange(3)

    # BMP 图像数据的行是从底到顶存储的
    for y in range(height):
        row_start = (height - 1 - y) * stride
        bgr = buffer[row_start + columns]
        if y == 0 and logger.isEnabledFor(logging.DEBUG):
            for x, (b, g, r) in enumerate(bgr):
                logger.debug('首行像素 %d: 偏移 %d RGB=(%d, %d, %d)',
                             x, row_start + x * pixel_stride, r, g, b)
        yield bgr[:, ::-1]


def iter_yuv_chunks(pixels: bytes, width: int, height: int,
                    pixel_stride: int = PIXEL_STRIDE_PACKED,
                    batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[bytes]:
    """流式产出打包好的 YUV 字节, 每攒够 batch_size 个像素转换一次"""
    pixel_buffer = []
    buffered_pixels = 0

    for row_pixels in iter_display_rows(pixels, width, height, pixel_stride):
        pixel_buffer.append(row_pixels)
        buffered_pixels += row_pixels.shape[0]
        if buffered_pixels >= batch_size:
            yield rgb_to_yuv_batch(np.concatenate(pixel_buffer, axis=0)).tobytes()
            pixel_buffer.clear()
            buffered_pixels = 0

    # 最后不足一批的像素
    if pixel_buffer:
        yield rgb_to_yuv_batch(np.concatenate(pixel_buffer, axis=0)).tobytes()


def convert_one(data: bytes, pixel_stride: int = PIXEL_STRIDE_PACKED) -> bytes:
    """把完整的BMP文件内容转换为 YUV 4:4:4 packed 字节, 不接触文件系统"""
    _, info_header, pixels = decode_bitmap(io.BytesIO(data))
    return b''.join(iter_yuv_chunks(pixels, info_header.width, info_header.height, pixel_stride))


def _remove_partial(path: Optional[str]) -> None:
    if path is None:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def convert_file(input_path: str, output_path: str,
                 pixel_stride: int = PIXEL_STRIDE_PACKED,
                 batch_size: int = DEFAULT_BATCH_SIZE) -> Tuple[FileHeader, InfoHeader]:
    """
    转换单个文件, 边算边写.

    输出先写到同目录下独有的 ``<name>.*.part`` 临时文件, 成功后再改名;
    任何失败都会删掉半成品, 存储层的 OSError 包装成 BMPIOError 抛出.
    """
    output_path = os.fspath(output_path)
    part_path = None
    try:
        with open(input_path, 'rb') as f_in:
            file_header, info_header, pixels = decode_bitmap(f_in)

        with tempfile.NamedTemporaryFile(
                dir=os.path.dirname(output_path) or '.',
                prefix=os.path.basename(output_path) + '.',
                suffix='.part', delete=False) as f_out:
            part_path = f_out.name
            for chunk in iter_yuv_chunks(pixels, info_header.width, info_header.height,
                                         pixel_stride, batch_size):
                f_out.write(chunk)
        os.replace(part_path, output_path)
    except OSError as err:
        _remove_partial(part_path)
        raise BMPIOError(f'读写失败: {err}') from err
    except BaseException:
        _remove_partial(part_path)
        raise

    logger.debug('已写出 %s: %d 字节',
                 output_path, info_header.width * info_header.height * 3)
    return file_header, info_header
