#!/usr/bin/env python3
"""
Command line runner: rings, waits for Enter to answer, then lets the
dispatcher talk to the simulated caller through the microphone.

Commands while the call is up: p = hold, r = resume, restart, q = hang up.
"""

import argparse
import asyncio
import logging
import sys
import threading
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from .config import Config
from .errors import SimulatorError
from .models import CallState, ConversationTurn, Role, SentenceItem
from .scenario import ScenarioParameters
from .session import CallController, CallObserver

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s"

DEFAULT_SCENARIO = (
    "Someone is breaking into your house through the back door. "
    "You are hiding upstairs with your child."
)


def setup_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, datefmt="%H:%M:%S")
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)


class ConsoleObserver(CallObserver):
    """Prints the call as it happens."""

    def __init__(self):
        self._last_partial = ''

    def on_state_changed(self, state: CallState):
        labels = {
            CallState.RINGING: "📞 Ringing… press Enter to answer.",
            CallState.ACTIVE: "🎤 On the line. Speak to the caller.",
            CallState.PAUSED: "⏸  On hold. 'r' to resume.",
            CallState.ENDED: "📴 Call ended.",
        }
        if state in labels:
            print(labels[state], flush=True)

    def on_turn_appended(self, turn: ConversationTurn):
        self._last_partial = ''
        who = "You" if turn.role is Role.DISPATCHER else "Caller"
        print(f"{who}: {turn.text}", flush=True)

    def on_partial_transcript(self, text: str):
        if text != self._last_partial:
            self._last_partial = text
            print(f"  … {text}", flush=True)

    def on_caller_speaking(self, item: SentenceItem):
        log.debug("caller ↳ %s", item.text)

    def on_error(self, error: BaseException, fatal: bool):
        if fatal:
            print(f"[Call ended: {error}]", file=sys.stderr, flush=True)


def start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
    """Read stdin lines on a daemon thread and hand them to the event loop."""

    def worker():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.strip().lower())
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=worker, daemon=True).start()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dispatch-call-simulator",
        description="Practice 911 call-taking against a simulated caller.",
    )
    parser.add_argument("--scenario", default=DEFAULT_SCENARIO, help="What the caller is calling about")
    parser.add_argument("--instructions", default="", help="Extra persona instructions for the caller")
    parser.add_argument("--guidance", metavar="FILE", help="Real call transcript the conversation should follow")
    parser.add_argument("--cooperation", type=int, default=50, help="0 (hysterical) to 100 (calm)")
    parser.add_argument("--address", help="Fixed incident address (chosen from the scenario if omitted)")
    parser.add_argument("--city", default="Columbus")
    parser.add_argument("--state", default="OH")
    parser.add_argument("--volume", type=int, default=80, help="Caller playback volume 0-100")
    parser.add_argument("--voice", help="edge-tts voice name")
    parser.add_argument("--model", help="Ollama model name")
    parser.add_argument("--device", help="Input device index or name")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def load_guidance(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


async def run(config: Config, scenario: ScenarioParameters):
    """Ring, answer on Enter, then handle commands until the call ends."""
    loop = asyncio.get_running_loop()
    commands: asyncio.Queue = asyncio.Queue()
    start_stdin_reader(loop, commands)

    controller = CallController(scenario, config, observer=ConsoleObserver())
    await controller.ring()

    while True:
        command = await commands.get()
        if command is None or command == "q":
            break
        try:
            if controller.state is CallState.RINGING:
                await controller.answer()
            elif command == "p":
                controller.pause()
            elif command == "r":
                controller.resume()
            elif command == "restart":
                await controller.restart()
            elif controller.state is CallState.ENDED:
                print("Call is over. 'restart' for a new call or 'q' to quit.")
            else:
                print("Commands: p = hold, r = resume, restart, q = hang up")
        except SimulatorError as e:
            print(f"[{e}]", file=sys.stderr)

    session = await controller.hang_up()
    if session is not None:
        print(f"{len(session.turns)} turns, callback number {session.callback_number}, address {session.address}")


def main(argv=None):
    """Main entry point for the dispatch-call-simulator console script."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    device = int(args.device) if args.device and args.device.isdigit() else args.device
    try:
        config = Config.from_env(
            log_level=args.log_level,
            tts_voice=args.voice,
            ollama_model=args.model,
            microphone_device=device,
        )
        scenario = ScenarioParameters(
            scenario=args.scenario,
            cooperation_level=args.cooperation,
            caller_instructions=args.instructions,
            guidance_transcript=load_guidance(args.guidance),
            address=args.address,
            city=args.city,
            state=args.state,
            volume=args.volume,
        )
    except (ValidationError, OSError) as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level)
    try:
        asyncio.run(run(config, scenario))
    except KeyboardInterrupt:
        print("\nGoodbye!")
    except SimulatorError as e:
        log.error("%s", e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
