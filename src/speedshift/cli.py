import argparse
import logging
import sys

from . import ffmpeg_runner, planner
from .config import resolve_config
from .exceptions import InvalidSpeed
from .naming import format_speed


def main():
    parser = argparse.ArgumentParser(
        prog="speedshift", description="Audio speed-change server"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, help="Bind port")
    serve_parser.add_argument("--storage-dir", "-d", type=str, help="Directory for stored files")
    serve_parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # PLAN
    plan_parser = subparsers.add_parser("plan", help="Show the atempo steps for a speed")
    plan_parser.add_argument("speed", type=str, help="Speed factor (0.25-4.0)")

    args = parser.parse_args()

    if args.command == "serve":
        config = resolve_config({
            "server.host": args.host,
            "server.port": args.port,
            "server.log_level": args.log_level,
            "storage.directory": args.storage_dir,
        })
        logging.basicConfig(
            level=config.server.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)

    elif args.command == "check":
        print("Checking dependencies...")
        if ffmpeg_runner.check_ffmpeg(resolve_config().encoding.ffmpeg_path):
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    elif args.command == "plan":
        try:
            steps = planner.plan(args.speed)
        except InvalidSpeed as e:
            print(str(e), file=sys.stderr)
            sys.exit(2)
        print(f"Speed:   {format_speed(planner.validate_speed(args.speed))}x")
        print(f"Steps:   {', '.join(format_speed(step) for step in steps)}")
        print(f"Filter:  {planner.build_filter(steps)}")

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
