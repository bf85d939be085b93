"""Command-line client for the career guidance relay.

Two modes:
    voice: realtime voice conversation through the relay, with microphone
           capture and speaker playback; typed lines are sent as text turns
    chat:  text conversation against the streaming chat proxy; /voice records
           a spoken note and sends its transcription as the next message
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

from src.client.audio.capture import AudioCapture
from src.client.audio.playback import AudioPlaybackQueue, SoundDeviceSink
from src.client.chat import ChatSession, SpeechToTextClient, StreamingChatClient
from src.client.events import SessionEvent
from src.client.session import Message, SessionState, VoiceSessionManager
from src.client.transport import WebSocketRealtimeTransport
from src.client.voice_note import VoiceNoteRecorder
from src.common.errors import RelayError, UpstreamError
from src.common.logging import setup_logging

logger = logging.getLogger(__name__)

VOICE_NOTE_SECONDS = 5.0

VOICE_HELP = """
Commands:
  /mute  - Toggle microphone mute
  /quit  - End the session and exit
  /help  - Show this help

Speak into the microphone, or type a message and press Enter.
"""

CHAT_HELP = """
Commands:
  /voice [seconds] - Record a spoken message (default 5s)
  /quit  - Exit client
  /help  - Show this help

Type a message and press Enter.
"""


def mock_interview_tool(arguments: dict[str, Any]) -> str:
    """Acknowledge a mock interview request from the assistant."""
    role = arguments.get("role", "the role")
    print(f"\n[Mock interview started for {role}]")
    return f"Mock interview for {role} started"


def interview_feedback_tool(arguments: dict[str, Any]) -> None:
    """Display structured interview feedback."""
    print("\n[Interview feedback]")
    for key, value in arguments.items():
        print(f"  {key}: {value}")


class VoiceCLI:
    """Interactive voice session in the terminal."""

    def __init__(self, relay_url: str, device: str | None = None, verbose: bool = False) -> None:
        self.relay_url = relay_url
        self.device = device
        self.verbose = verbose
        self.running = True
        self.manager = VoiceSessionManager(
            connector=lambda: WebSocketRealtimeTransport.connect(relay_url),
            capture_factory=lambda on_frame: AudioCapture(on_frame, device=device),
            playback_factory=lambda: AudioPlaybackQueue(SoundDeviceSink(device=device)),
            tool_handlers={
                "start_mock_interview": mock_interview_tool,
                "provide_interview_feedback": interview_feedback_tool,
            },
        )
        self.manager.events.on(SessionEvent.MESSAGE_APPENDED, self._print_message)
        self.manager.events.on(SessionEvent.STATE_CHANGED, self._on_state_changed)
        self.manager.events.on(SessionEvent.ERROR, self._print_error)
        if verbose:
            self.manager.events.on(
                SessionEvent.LISTENING_CHANGED,
                lambda listening: print("\n(listening)" if listening else "\n(processing)"),
            )

    def _print_message(self, message: Message) -> None:
        speaker = "You" if message.role == "user" else "Advisor"
        print(f"\n{speaker}: {message.content}")

    def _print_error(self, error: Exception) -> None:
        print(f"\n✗ Error: {error}")

    def _on_state_changed(self, state: SessionState) -> None:
        if state == SessionState.CLOSED:
            self.running = False

    async def input_loop(self) -> None:
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "")
            except EOFError:
                break

            text = text.strip()
            if not text or not self.running:
                continue

            if text.startswith("/"):
                command = text[1:].lower()
                if command == "quit":
                    break
                elif command == "mute":
                    muted = self.manager.toggle_mute()
                    print("Microphone muted" if muted else "Microphone live")
                elif command == "help":
                    print(VOICE_HELP)
                else:
                    print(f"Unknown command: {command}")
                    print("Type /help for available commands")
                continue

            try:
                await self.manager.send_text_message(text)
            except RuntimeError as e:
                print(f"✗ {e}")
                break

    async def run(self) -> int:
        try:
            await self.manager.start_session()
        except RelayError as e:
            logger.error(f"Could not start voice session: {e}")
            print(f"✗ {e}")
            return 1

        print("\n" + "=" * 60)
        print("Career Guidance Voice Session")
        print("=" * 60)
        print(VOICE_HELP)

        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

        input_task = asyncio.create_task(self.input_loop())
        stop_task = asyncio.create_task(stop_requested.wait())
        try:
            await asyncio.wait({input_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            stop_task.cancel()
            self.running = False
            await self.manager.stop_session()

        print("\nSession ended. Goodbye!")
        return 0


class ChatCLI:
    """Interactive text chat in the terminal, with optional spoken notes."""

    def __init__(
        self,
        chat_url: str,
        transcribe_url: str = "http://localhost:8081/transcribe",
        device: str | None = None,
    ) -> None:
        self.client = StreamingChatClient(chat_url)
        self.session = ChatSession(self.client)
        self.transcriber = SpeechToTextClient(transcribe_url)
        self.recorder = VoiceNoteRecorder(
            self.transcriber,
            capture_factory=lambda on_frame: AudioCapture(on_frame, device=device),
        )

    async def record_voice_note(self, argument: str) -> str | None:
        """Record and transcribe a spoken message for ``/voice [seconds]``."""
        try:
            seconds = float(argument) if argument else VOICE_NOTE_SECONDS
        except ValueError:
            print(f"✗ Invalid recording length: {argument}")
            return None

        print(f"(recording for {seconds:g}s)")
        try:
            text = await self.recorder.record_and_transcribe(seconds)
        except UpstreamError as e:
            print(f"✗ {e.message}")
            return None
        except (RelayError, ValueError) as e:
            print(f"✗ {e}")
            return None

        if not text:
            print("(nothing heard)")
            return None
        print(f"You said: {text}")
        return text

    async def run(self) -> int:
        loop = asyncio.get_running_loop()

        print("\n" + "=" * 60)
        print("Career Guidance Chat")
        print("=" * 60)
        print(CHAT_HELP)

        try:
            while True:
                try:
                    text = await loop.run_in_executor(None, input, "You: ")
                except EOFError:
                    break

                text = text.strip()
                if not text:
                    continue
                if text == "/quit":
                    break
                if text == "/help":
                    print(CHAT_HELP)
                    continue
                if text == "/voice" or text.startswith("/voice "):
                    spoken = await self.record_voice_note(text[len("/voice") :].strip())
                    if spoken is None:
                        continue
                    text = spoken

                print("Advisor: ", end="", flush=True)
                try:
                    await self.session.send_text_message(
                        text, on_delta=lambda delta: print(delta, end="", flush=True)
                    )
                except UpstreamError as e:
                    print(f"\n✗ {e.message}")
                except RelayError as e:
                    print(f"\n✗ {e}")
                print()
        finally:
            await self.client.close()
            await self.transcriber.close()

        print("\nGoodbye!")
        return 0


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="Career guidance relay client")
    parser.add_argument(
        "mode",
        choices=["voice", "chat"],
        nargs="?",
        default="voice",
        help="Conversation mode (default: voice)",
    )
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:8080",
        help="Relay WebSocket URL (default: ws://localhost:8080)",
    )
    parser.add_argument(
        "--chat-url",
        type=str,
        default="http://localhost:8081/chat",
        help="Chat endpoint URL (default: http://localhost:8081/chat)",
    )
    parser.add_argument(
        "--transcribe-url",
        type=str,
        default="http://localhost:8081/transcribe",
        help="Transcription endpoint URL for /voice notes (default: http://localhost:8081/transcribe)",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Audio device name or index",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()
    setup_logging("DEBUG" if args.verbose else "WARNING")

    if args.mode == "voice":
        runner = VoiceCLI(args.url, device=args.device, verbose=args.verbose).run()
    else:
        runner = ChatCLI(args.chat_url, transcribe_url=args.transcribe_url, device=args.device).run()

    try:
        sys.exit(asyncio.run(runner))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
