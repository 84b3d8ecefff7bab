import sys
import time
import argparse
import logging
import platform

from .config import build_config
from .errors import ConfigError, StreamerError
from .server import HandshakeServer
from .session import CameraSession
from .utils import list_available_cameras, IS_JETSON

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Edge client streaming camera frames to a collector")
    parser.add_argument("--config", type=str, default="./config.yaml",
                        help="Path to YAML config (default: ./config.yaml)")
    parser.add_argument("--fps", type=int, default=None,
                        help="Frames per second pushed to every destination (overrides config)")
    parser.add_argument("--cameras", dest="camera_count", type=int, default=None,
                        help="Number of cameras to stream (overrides config)")
    parser.add_argument("--destination", dest="destinations", action="append", default=None,
                        help="Collector address, repeatable (overrides config)")
    parser.add_argument("--endpoint", type=str, default=None,
                        help="Collector endpoint path (default: api/frame)")
    parser.add_argument("--port", type=int, default=None,
                        help="Handshake server port (default: 8080)")
    parser.add_argument("--mock", action="store_true", default=None,
                        help="Generate random frames instead of opening cameras")
    parser.add_argument("--verbose", action="store_true", default=None,
                        help="Print informational messages")
    parser.add_argument("--list-cameras", action="store_true",
                        help="List available cameras and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    if args.list_cameras:
        print(f"Platform: {platform.system()}")
        print(f"Jetson detected: {IS_JETSON}")
        print("Scanning for available cameras...")
        available_cameras = list_available_cameras()
        if available_cameras:
            print(f"Found {len(available_cameras)} available cameras: {available_cameras}")
        else:
            print("No cameras found")
        return 0

    try:
        config = build_config(args.config, fps=args.fps, camera_count=args.camera_count,
                              destinations=args.destinations, endpoint=args.endpoint,
                              port=args.port, mock=args.mock, verbose=args.verbose)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error(str(e))
        return 1

    logging.basicConfig(level=logging.INFO if config.verbose else logging.WARNING, format=LOG_FORMAT)
    logger.info(f"Cameras: {config.camera_count}, FPS: {config.fps}, destinations: {config.destinations}")

    server = HandshakeServer(config.host, config.port)
    try:
        session = CameraSession.from_config(config)
    except StreamerError as e:
        logger.error(str(e))
        return 2
    try:
        server.start()
    except OSError as e:
        logger.error(f"Failed to start server: {e}")
        session.close()
        return 2
    logger.info(f"Successfully generated a new connection token: {server.token}")

    exit_code = 0
    try:
        if session.destinations:
            session.start()
            session.join()
        else:
            logger.info("No destinations configured; serving handshakes only. Press Ctrl+C to stop...")
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    except StreamerError as e:
        logger.error(str(e))
        exit_code = 3
    finally:
        session.close()
        server.shutdown()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
