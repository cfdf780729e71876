"""Command line front end.

    onnx2ncnn model.onnx [ncnn.param] [ncnn.bin] [--no-fuse] [--verbose]
"""

import argparse
import sys
from pathlib import Path

from .converter import convert
from .ir import ConversionError


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="onnx2ncnn",
        description="Convert an ONNX model to an ncnn param/bin pair")
    parser.add_argument("onnx", type=str, help="Input .onnx model")
    parser.add_argument("param", type=str, nargs="?", default="ncnn.param",
                        help="Output param file (default: ncnn.param)")
    parser.add_argument("bin", type=str, nargs="?", default="ncnn.bin",
                        help="Output weight file (default: ncnn.bin)")
    parser.add_argument("--no-fuse", action="store_true",
                        help="Skip the Transpose->MatMul rewrite")
    parser.add_argument("--verbose", action="store_true",
                        help="Print graph summary and pass activity")
    parser.add_argument("--validation", choices=["strict", "normal", "none"],
                        default="normal",
                        help="How strictly to check the emitted model")
    args = parser.parse_args(argv)

    src = Path(args.onnx)
    if not src.is_file():
        print(f"error: {src} not found", file=sys.stderr)
        return 2

    try:
        model = convert(src.read_bytes(), fuse=not args.no_fuse,
                        verbose=args.verbose, validation=args.validation)
    except ConversionError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    model.write(args.param, args.bin)
    if args.verbose:
        print(f"Wrote {args.param} ({model.layer_count} layers) "
              f"and {args.bin} ({len(model.blob):,} bytes)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
