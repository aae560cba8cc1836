#!/usr/bin/env python3
"""Tiny REPL used as an interactive child in tests.

Prints the prompt "repl> " on stdout (no newline) and reads one command per
line from stdin:

    echo TEXT   prints TEXT on stdout
    quit        exits with status 0
    anything    prints "'<cmd>' is an invalid command" on stderr

Exits with status 0 at end of input.
"""

import sys

PROMPT = "repl> "


def main() -> int:
    while True:
        sys.stdout.write(PROMPT)
        sys.stdout.flush()
        line = sys.stdin.readline()
        if not line:
            return 0
        command = line.strip()
        if command == "quit":
            return 0
        if command.startswith("echo "):
            sys.stdout.write(command[len("echo "):] + "\n")
            sys.stdout.flush()
            continue
        sys.stderr.write(f"'{command}' is an invalid command\n")
        sys.stderr.flush()


if __name__ == "__main__":
    sys.exit(main())
