"""
Stand-in for the transcoder.

Usage: fake_transcoder.py MODE INPUT OUTPUT

Modes:
    ok       copy INPUT to OUTPUT
    fail     exit 1 without output
    empty    create an empty OUTPUT
    garbage  write bytes that are not audio
"""

import shutil
import sys


def main() -> int:
    mode, input_path, output_path = sys.argv[1:4]
    if mode == "fail":
        print("Conversion failed!", flush=True)
        return 1
    if mode == "empty":
        open(output_path, "wb").close()
        return 0
    if mode == "garbage":
        with open(output_path, "wb") as f:
            f.write(b"this is not an audio file" * 10)
        return 0
    shutil.copyfile(input_path, output_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
