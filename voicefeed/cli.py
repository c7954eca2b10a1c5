"""
Command-line client for VoiceFeed.

Talks to the configured backend directly (the same capability object the
API uses), so it works against the local SQLite store or a Supabase project.

Usage::

    voicefeed sign-in you@example.com
    voicefeed record --title "Morning thoughts"
    voicefeed upload clip.wav --title "From my phone"
    voicefeed feed --follow
    voicefeed like <memo-id>
    voicefeed serve --port 8000
"""

import argparse
import asyncio
import logging
import sys
import threading
from pathlib import Path

from voicefeed import __version__
from voicefeed.core.config import Settings, get_settings
from voicefeed.core.exceptions import UnauthenticatedError, VoiceFeedError
from voicefeed.core.models import FeedSnapshot, Toast, ToastLevel
from voicefeed.core.utils import format_duration, time_ago
from voicefeed.services.audio.capture import CaptureController
from voicefeed.services.audio.device import SoundDeviceMicrophone
from voicefeed.services.backend import AuthUser, Backend, create_backend
from voicefeed.services.feed import FeedReader
from voicefeed.services.notifications import Notifier
from voicefeed.services.publish import PublishPipeline

logger = logging.getLogger(__name__)


def _print_toast(toast: Toast) -> None:
    prefix = {ToastLevel.success: "ok", ToastLevel.info: "info", ToastLevel.error: "error"}[toast.level]
    print(f"[{prefix}] {toast.message}", file=sys.stderr)


def print_snapshot(snapshot: FeedSnapshot) -> None:
    """Print the feed newest first, one memo per line."""
    if not snapshot.items:
        print("No voice memos yet.")
        return
    for item in snapshot.items:
        print(
            f"{item.id}  {item.user.display_name:<20.20}  {item.title:<30.30}  "
            f"{format_duration(item.duration):>5}  likes={item.likes_count} "
            f"comments={item.comments_count}  {time_ago(item.created_at)}"
        )


async def _require_user(backend: Backend) -> AuthUser:
    user = await backend.auth.get_current_user()
    if user is None:
        raise UnauthenticatedError("Not signed in; run `voicefeed sign-in <email>` first")
    return user


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_sign_in(args: argparse.Namespace, backend: Backend, settings: Settings, notifier: Notifier) -> int:
    code = await backend.auth.request_sign_in(args.email)
    if args.code:
        code = args.code
    elif code is not None:
        print(f"Sign-in code (development): {code}", file=sys.stderr)
    else:
        code = input("Enter the code from your email: ").strip()
    session = await backend.auth.verify_sign_in(args.email, code)
    notifier.success(f"Signed in as {session.user.email or session.user.id}")
    print(f"ACCESS_TOKEN={session.access_token}")
    return 0


def _wait_for_enter(loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> None:
    sys.stdin.readline()
    loop.call_soon_threadsafe(event.set)


async def cmd_record(args: argparse.Namespace, backend: Backend, settings: Settings, notifier: Notifier) -> int:
    user = None if args.no_publish else await _require_user(backend)
    device = SoundDeviceMicrophone(
        sample_rate=settings.capture_sample_rate,
        channels=settings.capture_channels,
        device=settings.capture_input_device,
    )
    controller = CaptureController(
        device,
        max_duration_seconds=settings.max_recording_seconds,
        timeslice_seconds=settings.capture_timeslice_seconds,
        tick_interval=settings.capture_tick_seconds,
        notifier=notifier,
    )

    await controller.start()
    try:
        stop_requested = asyncio.Event()
        if args.seconds is not None:
            print(f"Recording for {args.seconds}s...", file=sys.stderr)
            asyncio.get_running_loop().call_later(args.seconds, stop_requested.set)
        else:
            print(
                f"Recording... press Enter to stop (max {settings.max_recording_seconds}s)",
                file=sys.stderr,
            )
            # Daemon thread: a pending readline must not block interpreter exit
            threading.Thread(
                target=_wait_for_enter,
                args=(asyncio.get_running_loop(), stop_requested),
                daemon=True,
            ).start()

        stopped = asyncio.ensure_future(controller.wait_stopped())
        requested = asyncio.ensure_future(stop_requested.wait())
        await asyncio.wait({stopped, requested}, return_when=asyncio.FIRST_COMPLETED)
        requested.cancel()
        artifact = stopped.result() if stopped.done() else await controller.stop()
    except BaseException:
        await controller.close()
        raise

    print(f"Recorded {format_duration(artifact.duration_seconds)} ({artifact.size} bytes)", file=sys.stderr)
    if args.save:
        Path(args.save).write_bytes(artifact.data)
        print(f"Saved to {args.save}", file=sys.stderr)
    if args.no_publish:
        await controller.discard()
        return 0

    pipeline = PublishPipeline.from_settings(backend, settings, notifier=notifier)
    record = await controller.publish(pipeline, author_id=user.id, title=args.title)
    print(record.id)
    return 0


async def cmd_upload(args: argparse.Namespace, backend: Backend, settings: Settings, notifier: Notifier) -> int:
    user = await _require_user(backend)
    path = Path(args.file)
    pipeline = PublishPipeline.from_settings(backend, settings, notifier=notifier)
    record = await pipeline.publish_file(
        path.read_bytes(),
        filename=path.name,
        content_type=None,
        title=args.title,
        author_id=user.id,
    )
    print(record.id)
    return 0


async def cmd_feed(args: argparse.Namespace, backend: Backend, settings: Settings, notifier: Notifier) -> int:
    if not args.follow:
        reader = FeedReader(backend, notifier=notifier)
        print_snapshot(await reader.refresh())
        return 0

    def _on_snapshot(snapshot: FeedSnapshot) -> None:
        print(f"--- {snapshot.fetched_at:%H:%M:%S} ---")
        print_snapshot(snapshot)

    reader = FeedReader(
        backend,
        include_updates=settings.feed_include_updates,
        notifier=notifier,
        on_snapshot=_on_snapshot,
    )
    await reader.mount()
    try:
        await asyncio.Event().wait()
    finally:
        await reader.unmount()
    return 0


async def cmd_like(args: argparse.Namespace, backend: Backend, settings: Settings, notifier: Notifier) -> int:
    await _require_user(backend)
    result = await FeedReader(backend, notifier=notifier).like(args.memo_id)
    print(f"{result.id} likes={result.likes_count}")
    return 0


_COMMANDS = {
    "sign-in": cmd_sign_in,
    "record": cmd_record,
    "upload": cmd_upload,
    "feed": cmd_feed,
    "like": cmd_like,
}


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Build the backend, run one command, and release the backend."""
    notifier = Notifier(ttl_seconds=settings.toast_ttl_seconds)
    notifier.subscribe(_print_toast)
    backend = create_backend(settings, access_token=args.token or None)
    await backend.start()
    try:
        return await _COMMANDS[args.command](args, backend, settings, notifier)
    except VoiceFeedError as exc:
        if not any(t.code == exc.code for t in notifier.active()):
            print(f"[error] {exc.detail}", file=sys.stderr)
        return 1
    finally:
        await backend.close()


def serve(settings: Settings, host: str | None, port: int | None, reload: bool) -> int:
    import uvicorn

    uvicorn.run(
        "voicefeed.api.app:app",
        host=host or settings.app_host,
        port=port or settings.app_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voicefeed",
        description="Record, publish, and browse short voice memos",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--token",
        default=None,
        help="Session token (default: ACCESS_TOKEN from the environment / .env)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the HTTP / WebSocket API")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    p = sub.add_parser("sign-in", help="Sign in with an e-mailed one-time code")
    p.add_argument("email")
    p.add_argument("--code", default=None, help="Code to verify (prompted when omitted)")

    p = sub.add_parser("record", help="Record from the microphone and publish")
    p.add_argument("--title", default=None)
    p.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")
    p.add_argument("--save", default=None, help="Also write the recording to this file")
    p.add_argument("--no-publish", action="store_true", help="Do not publish the recording")

    p = sub.add_parser("upload", help="Publish an existing audio file")
    p.add_argument("file")
    p.add_argument("--title", default=None)

    p = sub.add_parser("feed", help="Print the feed of published memos")
    p.add_argument("--follow", action="store_true", help="Keep printing as the feed changes")

    p = sub.add_parser("like", help="Like a voice memo")
    p.add_argument("memo_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point with CLI argument parsing."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return serve(settings, args.host, args.port, args.reload)
    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
