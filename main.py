import argparse
import logging
import sys
from pathlib import Path
import uvicorn

from app import create_app
from config import ConfigError, EXAMPLE_CONFIG, load_config
from utils import request_id_ctx

logger = logging.getLogger(__name__)


def setup_logging(debug: bool):
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] [req:%(request_id)s] %(name)s: %(message)s"
    )

    # Override global LogRecord factory to inject request_id
    _old_factory = logging.getLogRecordFactory()

    def _record_factory(*args, **kwargs):
        record = _old_factory(*args, **kwargs)
        # Default to "-" if contextvar is unset (safe for startup/background)
        record.request_id = request_id_ctx.get("-")
        return record

    logging.setLogRecordFactory(_record_factory)


def main(argv=None):
    parser = argparse.ArgumentParser(description="DeepSeek reasoning proxy")
    parser.add_argument("--config", default="config.yaml", help="Config file path (YAML or JSON)")
    parser.add_argument(
        "--debug", action="store_true",
        help="Enable debug logging, including full non-stream requests and responses"
    )
    parser.add_argument(
        "--debug-requests", action="store_true",
        help="Save human-readable trace of each non-stream request to ./debug-requests/"
    )
    parser.add_argument("--host", default="0.0.0.0", help="Listen address")
    parser.add_argument("--port", type=int, default=None, help="Listen port (overrides proxy_port)")
    args = parser.parse_args(argv)

    setup_logging(args.debug)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error("Failed to load config: %s", exc)
        print(f"Create {args.config} like this:\n{EXAMPLE_CONFIG}", file=sys.stderr)
        sys.exit(1)

    if args.debug:
        logger.debug("Debug logging enabled")

    if args.debug_requests:
        config = config.model_copy(update={"debug_requests_dir": Path("debug-requests")})
    if config.debug_requests_dir:
        config.debug_requests_dir.mkdir(exist_ok=True, parents=True)
        logger.info("Per-request debug traces will be written to %s", config.debug_requests_dir)

    port = args.port or config.proxy_port
    logger.info("Listening on http://%s:%s (reasoning mode: %s)", args.host, port, config.reasoning_mode)
    uvicorn.run(create_app(config), host=args.host, port=port, reload=False)


if __name__ == "__main__":
    main()
