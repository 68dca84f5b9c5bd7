import asyncio
import sys
from pathlib import Path

from arexx.arexx_runtime import Interpreter, EngineConfig
from arexx.arexx_host import BBSHost, UserInfo, SessionInfo, InMemoryBBSDatabase
from arexx.arexx_datatypes import to_string

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def make_host() -> BBSHost:
    """A local console host: SAY/BBSWRITE go to stdout, BBSREAD reads stdin."""
    return BBSHost(
        UserInfo(username="Sysop", sec_level=255, id=1),
        SessionInfo(),
        output=print,
        reader=lambda: ainput(""),
        database=InMemoryBBSDatabase(),
    )

async def run_script_file(file_path: str, args):
    """Run an AREXX script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    interpreter = Interpreter(make_host(), args, EngineConfig.from_env())
    result = await interpreter.execute(source)
    for effect in result.side_effects:
        if effect.get('topics') == ['trace']:
            print(effect.get('message', ''), file=sys.stderr)
    if not result.success:
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    if result.value is not None:
        print(to_string(result.value))

async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg, sys.argv[2:])
            return

    print("AREXX REPL v1.0")
    print("Enter statements; a blank line runs the block. Type 'exit' or press Ctrl+D to quit.")

    host = make_host()
    config = EngineConfig.from_env()
    block = []

    # REPL Loop: every block is its own script run.
    while True:
        try:
            raw = await ainput(".. " if block else ">> ")
            if raw == "":
                raise EOFError
            line = raw.rstrip("\r\n")

            if not block and line.strip() == "exit":
                break
            if line.strip():
                block.append(line)
                continue
            if not block:
                continue

            source = "\n".join(block)
            block = []
            result = await Interpreter(host, [], config).execute(source)

            if not result.success:
                print(result.format_error(), file=sys.stderr)
                continue
            if result.value is not None:
                print(to_string(result.value))

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
