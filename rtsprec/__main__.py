#!/usr/bin/env python3
"""
rtsprec - Run as a module

Usage:
    python -m rtsprec [options]

Examples:
    python -m rtsprec
    python -m rtsprec --config rtsprec_config.json
    python -m rtsprec --port 8554 --output mystream.ts
"""

import argparse
import logging
import time

from . import PublishCoordinator, RTSPServer, ServerConfig


def main():
    parser = argparse.ArgumentParser(
        prog='rtsprec',
        description='rtsprec - RTSP ingest server with MPEG-TS recording',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m rtsprec                             # Listen on 8554, record to mystream.ts
  python -m rtsprec --config custom.json        # Use custom config file
  python -m rtsprec --port 554                  # Override RTSP port
  python -m rtsprec --output /tmp/cam.ts        # Override recording path
  python -m rtsprec --log-level DEBUG           # Verbose logging

Publish with:
  ffmpeg -re -i input.mp4 -c:v libx264 -f rtsp rtsp://localhost:8554/mystream
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='rtsprec_config.json',
        help='Path to config file (default: rtsprec_config.json)'
    )

    parser.add_argument(
        '--port', '-p',
        type=int,
        help='Override RTSP port'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        help='Override recording path'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Override log level'
    )

    args = parser.parse_args()

    # Load config from file, or use defaults if not found
    config = ServerConfig.load(args.config)

    # Apply command-line overrides
    if args.port:
        config.rtsp_port = args.port
    if args.output:
        config.record_path = args.output
    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    coordinator = PublishCoordinator(config)
    server = RTSPServer(coordinator, config)
    coordinator.bind(server)

    if not server.start():
        print("Failed to start RTSP server")
        return 1

    print("\n" + "="*50)
    print("RTSP server is running!")
    print("="*50)
    print(f"\nPublish / play URL: {server.rtsp_url}")
    print(f"Recording to: {config.record_path}")
    print("Press Ctrl+C to stop\n")

    try:
        while server.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        server.stop()
        coordinator.close()

    return 0


if __name__ == "__main__":
    exit(main())
