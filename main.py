"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from audio_format import encode_wav, extract_pcm, sniff
from audio_validator import validate_pcm
from config import JsonConfigStore, VoiceSettings
from credentials import BaiduTokenProvider
from decoder import PyAVDecoder
from errors import VoiceInputError
from live_recognizer import DashscopeStreamingRecognizer
from live_transcript import LiveTranscriptAggregator
from models import AudioFormat, LiveOutcome, SessionState
from recognizer import BaiduRecognizer
from recorder import SoundDeviceRecorder
from session_controller import CaptureSessionController

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class App:
    """Wires configured components together for the CLI commands."""

    def __init__(self, config_store: JsonConfigStore) -> None:
        self.config_store = config_store
        self.settings: VoiceSettings = config_store.load_settings()

    def build_recognizer(self) -> BaiduRecognizer:
        credentials = BaiduTokenProvider(
            api_key=self.settings.api_key,
            secret_key=self.settings.secret_key,
            ttl_margin_s=self.settings.token_ttl_margin_s,
        )
        return BaiduRecognizer(
            credentials,
            request_timeout_s=self.settings.request_timeout_s,
            dev_pid=self.settings.dev_pid,
        )

    def record(self, seconds: Optional[float]) -> int:
        auto_stop = seconds if seconds is not None else self.settings.auto_stop_s
        controller = CaptureSessionController(
            device=SoundDeviceRecorder(),
            recognizer=self.build_recognizer(),
            decoder=PyAVDecoder(),
            sample_rate=self.settings.sample_rate,
            auto_stop_s=auto_stop,
            on_state_change=lambda f, t: logger.info("%s -> %s", f.value, t.value),
        )
        if not controller.start():
            print("Recorder is busy.", file=sys.stderr)
            return EXIT_ERROR
        print("Recording... press Enter to stop.", file=sys.stderr)
        threading.Thread(target=self._stop_on_enter, args=(controller.stop,), daemon=True).start()
        controller.wait()
        return self._report(controller)

    def transcribe(self, path: Path) -> int:
        data = path.read_bytes()
        rate = self.settings.sample_rate
        try:
            container = sniff(data)
            if container in (AudioFormat.WEBM, AudioFormat.OGG):
                samples = PyAVDecoder().decode(data, rate, 1)
                data = encode_wav(samples, rate, 1)
            pcm = extract_pcm(data)
        except VoiceInputError as exc:
            print(f"{exc.code}: {exc.message}", file=sys.stderr)
            return EXIT_ERROR

        validation = validate_pcm(pcm, rate)
        if not validation.ok:
            print(f"{validation.code}: {validation.message}", file=sys.stderr)
            return EXIT_ERROR

        result = self.build_recognizer().recognize(pcm, rate, 1)
        if not result.success:
            print(f"{result.code}: {result.message}", file=sys.stderr)
            return EXIT_ERROR
        print(result.text)
        return EXIT_OK

    def dictate(self) -> int:
        device = SoundDeviceRecorder()
        outcomes: list[LiveOutcome] = []
        aggregator = LiveTranscriptAggregator(
            recognizer=DashscopeStreamingRecognizer(
                device,
                api_key=self.settings.dashscope_api_key,
                sample_rate=self.settings.sample_rate,
            ),
            permissions=device,
            on_update=lambda text: print(f"\r{text}", end="", file=sys.stderr, flush=True),
            on_end=outcomes.append,
            on_error=lambda code, message: print(f"\n{code}: {message}", file=sys.stderr),
        )
        if not aggregator.start():
            return EXIT_ERROR
        print("Listening... press Enter to finish.", file=sys.stderr)
        self._stop_on_enter(aggregator.stop)
        aggregator.wait(timeout=self.settings.request_timeout_s + 5)
        aggregator.close()
        print(file=sys.stderr)
        if not outcomes or not outcomes[-1].text:
            return EXIT_ERROR
        outcome = outcomes[-1]
        print(outcome.text)
        return EXIT_OK if outcome.committed else EXIT_ERROR

    def serve(self, host: str, port: int) -> int:
        import uvicorn

        from server import create_app

        app = create_app(self.build_recognizer(), sample_rate=self.settings.sample_rate)
        uvicorn.run(app, host=host, port=port, log_level="info")
        return EXIT_OK

    @staticmethod
    def _stop_on_enter(stop) -> None:  # noqa: ANN001
        try:
            sys.stdin.readline()
        except (OSError, ValueError):
            return
        stop()

    @staticmethod
    def _report(controller: CaptureSessionController) -> int:
        if controller.state == SessionState.COMPLETED:
            print(controller.transcript)
            return EXIT_OK
        if controller.last_error is not None:
            code, message = controller.last_error
            print(f"{code}: {message}", file=sys.stderr)
        return EXIT_ERROR


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voice-input", description="Voice input to text")
    parser.add_argument("-c", "--config", type=Path, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    record_parser = subparsers.add_parser("record", help="Record one utterance and recognise it")
    record_parser.add_argument("-s", "--seconds", type=float, help="Auto-stop after this many seconds")

    transcribe_parser = subparsers.add_parser("transcribe", help="Recognise a WAV/PCM/WebM/Ogg file")
    transcribe_parser.add_argument("file", type=Path)

    subparsers.add_parser("dictate", help="Continuous dictation with live transcript")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP upload endpoint")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    configure_parser = subparsers.add_parser("configure", help="Store credentials and defaults")
    configure_parser.add_argument("--api-key")
    configure_parser.add_argument("--secret-key")
    configure_parser.add_argument("--dashscope-api-key")
    configure_parser.add_argument("--auto-stop", type=float, help="Seconds, 0 disables")
    return parser


def configure(store: JsonConfigStore, parsed: argparse.Namespace) -> int:
    if parsed.api_key is not None:
        store.set_api_key(parsed.api_key)
    if parsed.secret_key is not None:
        store.set_secret_key(parsed.secret_key)
    if parsed.dashscope_api_key is not None:
        store.set_dashscope_api_key(parsed.dashscope_api_key)
    if parsed.auto_stop is not None:
        store.set_auto_stop_s(parsed.auto_stop or None)
    print(f"Saved to {store.path}", file=sys.stderr)
    return EXIT_OK


def main(args: Optional[List[str]] = None) -> int:
    parser = create_parser()
    parsed = parser.parse_args(args)
    if not parsed.command:
        parser.print_help()
        return EXIT_USAGE

    setup_logging(parsed.verbose)
    store = JsonConfigStore(path=parsed.config)
    if parsed.command == "configure":
        return configure(store, parsed)

    app = App(store)
    if parsed.command == "record":
        return app.record(parsed.seconds)
    if parsed.command == "transcribe":
        return app.transcribe(parsed.file)
    if parsed.command == "dictate":
        return app.dictate()
    if parsed.command == "serve":
        return app.serve(parsed.host, parsed.port)
    parser.print_help()
    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
