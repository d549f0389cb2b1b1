"""
Command Line Interface for magnet-stream
Runs the streaming server and offers a few one-shot torrent and debrid commands.
"""

import argparse
import asyncio
import logging
import os
import sys

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="magnet-stream",
        description="magnet-stream - stream torrent files over HTTP from swarm, daemon or hybrid engines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the server with the hybrid engine
  magnet-stream serve --port 8090 --engine hybrid --instances 2

  # List the playable files of a magnet
  magnet-stream files "magnet:?xt=urn:btih:..."

  # Show or change the persisted engine choice
  magnet-stream engine show --db /config/magnet_stream.db
  magnet-stream engine set daemon --db /config/magnet_stream.db

  # Get a direct Real-Debrid link for the largest file
  magnet-stream debrid link "magnet:?xt=urn:btih:..." --token XXXX

Environment Variables:
  HOST                  - Server bind address (default: 0.0.0.0)
  PORT                  - Server port (default: 8090)
  CACHE_PATH            - Torrent data cache (default: /tmp/magnet-stream)
  CONFIG_PATH           - Directory for the settings database (default: /config)
  ENGINE                - swarm, daemon or hybrid (default: swarm)
  ENGINE_INSTANCES      - Engine instances, 1-3 (default: 1)
  DAEMON_COMMAND        - Command that starts the streaming daemon
  DEBRID_TOKEN          - Real-Debrid API token
  DEBRID_REFRESH_TOKEN  - Real-Debrid OAuth refresh token
  LOG_LEVEL             - Logging level (default: INFO)
  LOG_FILE              - Log file path (enables rotation)
  LOG_FORMAT            - Log format: text or json (default: text)
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the streaming server")
    serve_parser.add_argument(
        "--host", "-H", default="0.0.0.0", help="Host to bind to"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8090, help="Port to listen on"
    )
    serve_parser.add_argument(
        "--cache-path", "-c", default="/tmp/magnet-stream", help="Torrent data cache"
    )
    serve_parser.add_argument(
        "--config-path", default="/config", help="Directory for the settings database"
    )
    serve_parser.add_argument(
        "--engine", "-e", choices=["swarm", "daemon", "hybrid"],
        help="Engine used when none is persisted"
    )
    serve_parser.add_argument(
        "--instances", "-n", type=int, help="Engine instances (1-3)"
    )
    serve_parser.add_argument(
        "--daemon-command", help="Command that starts the streaming daemon"
    )
    serve_parser.add_argument(
        "--debrid-token", "-t", help="Real-Debrid API token (or use DEBRID_TOKEN env var)"
    )
    serve_parser.add_argument(
        "--log-level", "-l", default="INFO", help="Log level"
    )
    serve_parser.add_argument(
        "--log-file", help="Log file path (enables rotation)"
    )
    serve_parser.add_argument(
        "--log-format", choices=["text", "json"], default="text",
        help="Log format: text or json"
    )
    serve_parser.add_argument(
        "--no-persist", action="store_true",
        help="Disable settings persistence"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload (dev mode)"
    )

    # Files command
    files_parser = subparsers.add_parser("files", help="List playable files of a magnet")
    files_parser.add_argument("magnet", help="Magnet link or info hash")
    files_parser.add_argument(
        "--engine", "-e", choices=["swarm", "daemon", "hybrid"], default="swarm",
        help="Engine used to fetch metadata"
    )
    files_parser.add_argument(
        "--cache-path", "-c", default="/tmp/magnet-stream", help="Torrent data cache"
    )
    files_parser.add_argument(
        "--timeout", type=float, default=90.0, help="Metadata timeout in seconds"
    )

    # Engine command
    engine_parser = subparsers.add_parser("engine", help="Show or set the persisted engine")
    engine_subparsers = engine_parser.add_subparsers(dest="engine_command")

    engine_show = engine_subparsers.add_parser("show", help="Show the persisted engine")
    engine_show.add_argument("--db", default="magnet_stream.db", help="Database path")

    engine_set = engine_subparsers.add_parser("set", help="Persist an engine choice")
    engine_set.add_argument("engine", help="swarm, daemon or hybrid")
    engine_set.add_argument("--instances", "-n", type=int, default=1, help="Engine instances (1-3)")
    engine_set.add_argument("--db", default="magnet_stream.db", help="Database path")

    # Debrid command
    debrid_parser = subparsers.add_parser("debrid", help="Real-Debrid helpers")
    debrid_subparsers = debrid_parser.add_subparsers(dest="debrid_command")

    debrid_link = debrid_subparsers.add_parser("link", help="Get a direct link for a magnet")
    debrid_link.add_argument("magnet", help="Magnet link or info hash")
    debrid_link.add_argument("--file", "-f", type=int, help="File id (default: largest)")
    debrid_link.add_argument("--token", "-t", help="Real-Debrid API token (or DEBRID_TOKEN)")

    return parser


def main():
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "serve":
        run_server(args)
    elif args.command == "files":
        asyncio.run(run_files(args))
    elif args.command == "engine" and args.engine_command:
        asyncio.run(run_engine(args))
    elif args.command == "debrid" and args.debrid_command:
        asyncio.run(run_debrid(args))
    else:
        parser.print_help()
        sys.exit(1)


def run_server(args):
    """Run the streaming server."""
    import uvicorn

    setup_logging(args.log_level)

    # Set environment variables for the server
    os.environ["HOST"] = args.host
    os.environ["PORT"] = str(args.port)
    os.environ["CACHE_PATH"] = args.cache_path
    os.environ["CONFIG_PATH"] = args.config_path
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["PERSIST_STATE"] = "false" if args.no_persist else "true"

    if args.engine:
        os.environ["ENGINE"] = args.engine
    if args.instances:
        os.environ["ENGINE_INSTANCES"] = str(args.instances)
    if args.daemon_command:
        os.environ["DAEMON_COMMAND"] = args.daemon_command
    if args.debrid_token:
        os.environ["DEBRID_TOKEN"] = args.debrid_token
    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file

    logger.info(f"Starting magnet-stream on {args.host}:{args.port}")
    logger.info(f"Cache path: {args.cache_path}")
    logger.info(f"Settings persistence: {'disabled' if args.no_persist else args.config_path}")

    uvicorn.run(
        "magnet_stream.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


async def run_files(args):
    """Fetch metadata for a magnet and print its playable files."""
    from .engine_manager import BackendFactory, EngineManager
    from .exceptions import StreamCoreError

    manager = EngineManager(
        BackendFactory(cache_path=args.cache_path, metadata_timeout=args.timeout),
        default_engine=args.engine,
    )
    await manager.initialize()

    try:
        result = await manager.get_torrent_files(args.magnet)
    except StreamCoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        await manager.shutdown()

    print(f"\n{result['name']} ({format_size(result['total_size'])})")
    print(f"Info hash: {result['info_hash']}")

    print(f"\n=== Video files ({len(result['video_files'])}) ===")
    if result["video_files"]:
        print(f"{'Index':<7} {'Size':<12} {'Name':<60}")
        print("-" * 80)
        for f in result["video_files"]:
            name = f["name"][:57] + "..." if len(f["name"]) > 60 else f["name"]
            print(f"{f['index']:<7} {format_size(f['size']):<12} {name:<60}")

    if result["subtitle_files"]:
        print(f"\n=== Subtitles ({len(result['subtitle_files'])}) ===")
        for f in result["subtitle_files"]:
            print(f"{f['index']:<7} {f['name']}")


async def run_engine(args):
    """Show or change the persisted engine choice."""
    from .engine_manager import clamp_instances
    from .models import EngineKind
    from .persistence import PersistenceManager

    if args.engine_command == "show" and not os.path.exists(args.db):
        print(f"Database not found: {args.db}")
        sys.exit(1)

    pm = PersistenceManager(args.db)
    await pm.initialize()

    try:
        if args.engine_command == "show":
            choice = await pm.get_engine_choice()
            if choice is None:
                print("No engine persisted (server default applies)")
            else:
                engine, instances = choice
                print(f"Engine: {engine}")
                print(f"Instances: {instances}")

        elif args.engine_command == "set":
            try:
                kind = EngineKind.parse(args.engine)
            except ValueError as e:
                print(f"Error: {e}")
                sys.exit(1)
            instances = clamp_instances(args.instances)
            await pm.save_engine_choice(kind.value, instances)
            print(f"Engine set to {kind.value} ({instances} instance(s))")

    finally:
        await pm.close()


async def run_debrid(args):
    """Resolve a magnet to a direct Real-Debrid URL."""
    from .debrid_client import DebridClient
    from .exceptions import StreamCoreError
    from .persistence import DebridCredentials

    token = args.token or os.environ.get("DEBRID_TOKEN")
    if not token:
        print("Error: No Real-Debrid token provided.")
        print("Use --token or set DEBRID_TOKEN environment variable.")
        sys.exit(1)

    client = DebridClient(DebridCredentials(access_token=token))
    try:
        url = await client.get_playable_url(args.magnet, args.file)
    except StreamCoreError as e:
        print(f"Error ({e.kind}): {e}")
        sys.exit(1)
    finally:
        await client.close()

    print(url)


if __name__ == "__main__":
    main()
