import argparse
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tqdm import tqdm

from bmp_header import BMPError, FileHeader, InfoHeader
from bmp_to_yuv import (
    DEFAULT_BATCH_SIZE,
    PIXEL_STRIDE_LEGACY,
    PIXEL_STRIDE_PACKED,
    convert_file,
)

logger = logging.getLogger(__name__)

DEFAULT_INPUT_FOLDER = 'input_images'
DEFAULT_OUTPUT_FOLDER = 'output_yuv'
INPUT_EXTENSION = '.bmp'
OUTPUT_EXTENSION = '.yuv'


# 运行参数封装, 方便在函数之间传递设置
@dataclass
class Config:
    input_folder: str = DEFAULT_INPUT_FOLDER
    output_folder: str = DEFAULT_OUTPUT_FOLDER
    batch_size: int = DEFAULT_BATCH_SIZE
    verbose: bool = False
    pixel_stride: int = PIXEL_STRIDE_PACKED
    workers: int = 1


@dataclass
class BatchResult:
    converted: List[str] = field(default_factory=list)
    failures: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def find_bmp_files(input_folder: str) -> List[str]:
    """列出文件夹下所有BMP文件名 (扩展名不区分大小写), 按名字排序"""
    return sorted(
        f for f in os.listdir(input_folder)
        if f.lower().endswith(INPUT_EXTENSION)
        and os.path.isfile(os.path.join(input_folder, f))
    )


def output_path_for(filename: str, output_folder: str) -> str:
    name, _ = os.path.splitext(filename)
    return os.path.join(output_folder, name + OUTPUT_EXTENSION)


class DuplicateOutputError(BMPError):
    """多个输入文件对应同一个输出文件"""


def claim_outputs(bmp_files: List[str],
                  output_folder: str) -> Tuple[List[str], Dict[str, DuplicateOutputError]]:
    """按顺序为每个文件分配输出路径, 后出现的重名文件判为失败"""
    owners: Dict[str, str] = {}
    duplicates: Dict[str, DuplicateOutputError] = {}
    for filename in bmp_files:
        key = os.path.normcase(output_path_for(filename, output_folder))
        if key in owners:
            duplicates[filename] = DuplicateOutputError(
                f"输出文件与 {owners[key]} 重名: {output_path_for(filename, output_folder)}")
        else:
            owners[key] = filename
    return [f for f in bmp_files if f not in duplicates], duplicates


def convert_one_file(filename: str, config: Config) -> Tuple[FileHeader, InfoHeader]:
    """转换文件夹中的单个文件"""
    input_path = os.path.join(config.input_folder, filename)
    output_path = output_path_for(filename, config.output_folder)
    return convert_file(input_path, output_path,
                        pixel_stride=config.pixel_stride,
                        batch_size=config.batch_size)


def _report(filename: str, outcome, config: Config, result: BatchResult) -> None:
    if isinstance(outcome, BMPError):
        print(f"❌ 文件格式错误 {filename}: {outcome}")
        logger.debug('转换 %s 失败', filename, exc_info=outcome)
        result.failures[filename] = outcome
    elif isinstance(outcome, Exception):
        print(f"❌ 处理 {filename} 时出错: {outcome}")
        logger.debug('转换 %s 失败', filename, exc_info=outcome)
        result.failures[filename] = outcome
    else:
        _, info_header = outcome
        if config.verbose:
            print(f"已处理: {filename} ({info_header.width}x{info_header.height})")
        result.converted.append(filename)


def _run(filename: str, config: Config):
    try:
        return convert_one_file(filename, config)
    except Exception as err:
        # 单个文件失败只记录, 不影响其余文件
        return err


def process_folder(config: Config) -> BatchResult:
    """批量处理文件夹, 每个文件独立转换, 失败时打印提示并继续"""
    os.makedirs(config.output_folder, exist_ok=True)
    result = BatchResult()

    bmp_files = find_bmp_files(config.input_folder)
    if not bmp_files:
        print(f"在 {config.input_folder} 中未找到BMP文件")
        return result

    print(f"发现 {len(bmp_files)} 个BMP文件")
    bmp_files, duplicates = claim_outputs(bmp_files, config.output_folder)
    for filename, err in duplicates.items():
        _report(filename, err, config, result)

    with tqdm(total=len(bmp_files), desc="处理进度", unit="文件") as pbar:
        if config.workers <= 1:
            for filename in bmp_files:
                pbar.set_postfix({"当前": filename})
                _report(filename, _run(filename, config), config, result)
                pbar.update(1)
        else:
            # 文件之间没有共享状态, 每个文件一个任务
            with ThreadPoolExecutor(max_workers=config.workers) as pool:
                futures = {pool.submit(_run, f, config): f for f in bmp_files}
                for future in as_completed(futures):
                    filename = futures[future]
                    pbar.set_postfix({"当前": filename})
                    _report(filename, future.result(), config, result)
                    pbar.update(1)

    return result


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f'必须是正整数: {value}')
    return number


def parse_args(argv: Optional[List[str]] = None) -> Config:
    """命令行参数解析"""
    parser = argparse.ArgumentParser(
        description='BMP转YUV工具 - 输出 YUV 4:4:4 8-bit packed',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
使用示例:
  bmp-to-yuv
  bmp-to-yuv input output
  bmp-to-yuv input output --batch-size 2048 --workers 4
  bmp-to-yuv input output --legacy-pixel-stride
        '''
    )

    parser.add_argument('input_folder', nargs='?', default=DEFAULT_INPUT_FOLDER,
                        help=f'输入文件夹路径 (默认: {DEFAULT_INPUT_FOLDER})')
    parser.add_argument('output_folder', nargs='?', default=DEFAULT_OUTPUT_FOLDER,
                        help=f'输出文件夹路径 (默认: {DEFAULT_OUTPUT_FOLDER})')
    parser.add_argument('--batch-size', type=_positive_int, default=DEFAULT_BATCH_SIZE,
                        help=f'批处理大小 (默认: {DEFAULT_BATCH_SIZE})')
    parser.add_argument('--workers', type=_positive_int, default=1,
                        help='并行转换的文件数 (默认: 1)')
    parser.add_argument('--legacy-pixel-stride', action='store_true',
                        help='按每像素 4 字节取数, 与旧版工具输出逐位一致')
    parser.add_argument('--verbose', action='store_true',
                        help='显示详细输出')

    args = parser.parse_args(argv)

    return Config(
        input_folder=args.input_folder,
        output_folder=args.output_folder,
        batch_size=args.batch_size,
        verbose=args.verbose,
        pixel_stride=PIXEL_STRIDE_LEGACY if args.legacy_pixel_stride else PIXEL_STRIDE_PACKED,
        workers=args.workers,
    )


def main(argv: Optional[List[str]] = None) -> None:
    """主函数"""
    try:
        config = parse_args(argv)
        logging.basicConfig(
            level=logging.DEBUG if config.verbose else logging.WARNING,
            format='%(levelname)s %(name)s: %(message)s',
        )

        # 预先检查输入目录有效性, 早退出给出明确提示
        if not os.path.exists(config.input_folder):
            print(f"❌ 输入文件夹不存在: {config.input_folder}")
            sys.exit(1)

        if not os.path.isdir(config.input_folder):
            print(f"❌ 输入路径不是文件夹: {config.input_folder}")
            sys.exit(1)

        print(f"输入文件夹: {config.input_folder}")
        print(f"输出文件夹: {config.output_folder}")
        print(f"批处理大小: {config.batch_size}")
        if config.pixel_stride == PIXEL_STRIDE_LEGACY:
            print("像素步长: 4 (兼容旧版输出)")
        print("-" * 50)

        result = process_folder(config)

    except KeyboardInterrupt:
        print("\n⚠️ 用户中断操作")
        sys.exit(1)
    except OSError as e:
        print(f"💥 程序异常: {e}")
        sys.exit(1)

    if not result.ok:
        print(f"⚠️ {len(result.failures)} 个文件转换失败, "
              f"{len(result.converted)} 个成功. 输出到: {config.output_folder}")
        sys.exit(1)

    print(f"✅ 所有文件处理完成！输出到: {config.output_folder}")


if __name__ == "__main__":
    main()
