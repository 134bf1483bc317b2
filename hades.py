import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from hadesscript.hades_config import load_options
from hadesscript.hades_interpreter import block_balance
from hadesscript.hades_printer import Printer
from hadesscript.hades_runtime import ScriptRunner

USAGE = "usage: hades.py [--config FILE] [--debug] [script]"


# A basic input prompt; replaced in tests.
def read_line(prompt: str) -> str:
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return sys.stdin.readline()


def parse_args(argv: List[str]):
    """Returns (config_path, debug, script_path)."""
    config_path: Optional[str] = None
    debug = False
    script: Optional[str] = None
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg == "--config":
            if not args:
                raise SystemExit(USAGE)
            config_path = args.pop(0)
        elif arg == "--debug":
            debug = True
        elif arg.startswith("-"):
            raise SystemExit(USAGE)
        elif script is None:
            script = arg
        else:
            raise SystemExit(USAGE)
    return config_path, debug, script


def configure_logging(debug: bool):
    if debug or os.environ.get("HADES_DEBUG"):
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr,
                            format="%(levelname)s %(name)s: %(message)s")


def print_result(result, printer: Printer):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return
    # A script without `return` yields true; only explicit values are shown
    if result.value is not None and result.value is not True:
        print(printer.pformat(result.value))


def run_script_file(runner: ScriptRunner, file_path: str):
    """Run a HadesScript file non-interactively and exit with appropriate status."""
    if not Path(file_path).is_file():
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = runner.run_file(file_path)
    for message in result.messages:
        print(message, file=sys.stderr)
    print_result(result, Printer())
    if result.status == 'error':
        raise SystemExit(1)


def repl(runner: ScriptRunner):
    print("HadesScript REPL")
    print("Type 'exit' or press Ctrl+D to quit.")
    printer = Printer()
    pending: List[str] = []
    while True:
        try:
            raw = read_line(".. " if pending else ">> ")
            if raw == "":
                raise EOFError
            line = raw.rstrip("\n")
            if not pending and line.strip() == "exit":
                break
            if not pending and not line.strip():
                continue
            pending.append(line)
            source = "\n".join(pending)
            # Keep reading until every opened block is closed
            if block_balance(source) > 0:
                continue
            pending = []
            print_result(runner.handle_script(source), printer)
        except EOFError:
            print("\nExiting.")
            break


def main(argv: Optional[List[str]] = None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    config_path, debug, script = parse_args(sys.argv[1:] if argv is None else argv)
    options = load_options(config_path)
    configure_logging(debug or options.debug)
    runner = ScriptRunner(options)
    if script is not None:
        run_script_file(runner, script)
        return
    repl(runner)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nExiting.")
