import struct

import pytest


def build_bmp(rows, bits_per_pixel=24, compression=0, signature=b'BM',
              pixel_stride=3, negate_height=False, width=None, height=None,
              data_offset=54):
    """
    按自底向上顺序拼出一个 BMP 文件.

    ``rows`` 是显示顺序 (自顶向下) 的 RGB 元组列表; ``pixel_stride=4`` 时
    每个 BGR 三元组后面多补一个字节, 模拟旧版工具假设的排布.
    """
    height = len(rows) if height is None else height
    width = (len(rows[0]) if rows else 0) if width is None else width
    stride = ((width * bits_per_pixel + 31) // 32) * 4

    pixel_data = bytearray()
    for row in reversed(rows):
        packed = bytearray()
        for r, g, b in row:
            packed += bytes((b, g, r))
            packed += b'\x00' * (pixel_stride - 3)
        packed += b'\x00' * max(0, stride - len(packed))
        pixel_data += packed

    gap = b'\x00' * (data_offset - 54)
    file_size = data_offset + len(pixel_data)
    header = struct.pack('<2sIHHI', signature, file_size, 0, 0, data_offset)
    info = struct.pack('<IiiHHIIiiII', 40, width, -height if negate_height else height,
                       1, bits_per_pixel, compression, len(pixel_data), 2835, 2835, 0, 0)
    return header + info + gap + bytes(pixel_data)


@pytest.fixture
def make_bmp():
    return build_bmp


@pytest.fixture
def corners():
    """2x2 图, 四个角颜色各不相同"""
    return [
        [(255, 0, 0), (0, 255, 0)],
        [(0, 0, 255), (255, 255, 255)],
    ]
