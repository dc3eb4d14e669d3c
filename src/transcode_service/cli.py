import argparse
import shlex
import sys

from . import presets
from .config import configure_logging, resolve_config
from .errors import ValidationError
from .ffmpeg_runner import FfmpegRunner
from .jobs import init_schema


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="transcode-service", description="Asynchronous video transcode service"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, help="Bind address (overrides config)")
    serve_parser.add_argument("--port", type=int, help="Bind port (overrides config)")

    # INIT DB
    init_parser = subparsers.add_parser("init-db", help="Create the job table")
    init_parser.add_argument("--url", type=str, help="Database URL (overrides config)")

    # PRESETS
    subparsers.add_parser("presets", help="List quality presets")

    # RESOLVE
    resolve_parser = subparsers.add_parser(
        "resolve", help="Resolve a preset and print the engine command"
    )
    resolve_parser.add_argument("input", type=str, help="Input file path")
    resolve_parser.add_argument("preset", type=str, help="Quality preset name")
    resolve_parser.add_argument(
        "--codec", choices=sorted(presets.VIDEO_CODECS), help="Video codec"
    )
    resolve_parser.add_argument("--output", "-o", type=str, help="Output path")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify ffmpeg and ffprobe")

    args = parser.parse_args(argv)
    config = resolve_config()

    if args.command == "serve":
        import uvicorn

        configure_logging(config)
        uvicorn.run(
            "transcode_service.api.main:app",
            host=args.host or config.server.host,
            port=args.port or config.server.port,
        )

    elif args.command == "init-db":
        url = args.url or config.database.url
        init_schema(url)
        print(f"Initialized job table at {url}")

    elif args.command == "presets":
        for name in presets.available_presets():
            preset = presets.PRESETS[name]
            print(f"{name:<14} {preset.width}x{preset.height}  crf={preset.quality}  speed={preset.speed}")

    elif args.command == "resolve":
        try:
            spec = presets.resolve(
                args.input,
                args.preset,
                codec_name=args.codec or config.engine.default_codec,
                audio_codec_name=config.engine.audio_codec,
            )
        except ValidationError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

        from .jobs.models import output_locator_for

        output = args.output or output_locator_for(args.input, args.preset)
        runner = FfmpegRunner(
            ffmpeg_path=config.engine.ffmpeg_path,
            ffprobe_path=config.engine.ffprobe_path,
            loglevel=config.engine.loglevel,
        )
        print(shlex.join(runner.build_command(spec, output)))

    elif args.command == "check":
        print("Checking dependencies...")
        runner = FfmpegRunner(
            ffmpeg_path=config.engine.ffmpeg_path, ffprobe_path=config.engine.ffprobe_path
        )
        results = runner.check()
        for tool, ok in results.items():
            print(f"{tool}: {'found' if ok else 'NOT found'}")
        if not all(results.values()):
            sys.exit(1)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
