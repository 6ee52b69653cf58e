#!/usr/bin/env python3
"""
Stand-in preprocessor for the driver tests.

Copies the bytes of each input file to the -o target (or stdout) behind a line marker,
like `cc -E` would for a file without directives. Environment:
    FAKE_CPP_LOG     write the received arguments here as JSON
    FAKE_CPP_STATUS  exit with this status without producing output
"""

import json
import os
import sys

OPTIONS_WITH_VALUE = ('-o', '-I', '-D', '-U', '-include', '-isystem', '-x', '-MF', '-MT')


def main(args):
    log_path = os.environ.get('FAKE_CPP_LOG')
    if log_path:
        with open(log_path, 'w', encoding='utf-8') as f:
            json.dump(args, f)

    status = int(os.environ.get('FAKE_CPP_STATUS', '0'))
    if status:
        print("fake_cpp: failing on request", file=sys.stderr)
        return status

    output = None
    inputs = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in OPTIONS_WITH_VALUE and i + 1 < len(args):
            if arg == '-o':
                output = args[i + 1]
            i += 2
            continue
        if not arg.startswith('-'):
            inputs.append(arg)
        i += 1

    chunks = []
    for path in inputs:
        chunks.append(f'# 1 "{path}"\n'.encode('utf-8'))
        with open(path, 'rb') as f:
            chunks.append(f.read())
    data = b''.join(chunks)

    if output is None or output == '-':
        sys.stdout.buffer.write(data)
    else:
        with open(output, 'wb') as f:
            f.write(data)
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
