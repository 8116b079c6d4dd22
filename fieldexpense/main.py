"""Serve the expense API with uvicorn using the configured bind address."""

import uvicorn

from fieldexpense.api.app import app
from fieldexpense.utils.config import load_config
from fieldexpense.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def main() -> None:
    config = load_config()
    setup_logging(config.log_level, config.log_file)
    logger.info("Reports are written to %s", config.report.output_dir)
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
