#!/usr/bin/env python3
"""
Container entry point serving the /api/dv and /api/tv reverse proxy.
"""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from video2text.config import Settings, load_env_file, validate_settings
from video2text.proxy import create_app


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    load_env_file('/app/.env')
    settings = Settings.from_env()

    problems = validate_settings(settings)
    if problems:
        for problem in problems:
            logger.error(problem)
        sys.exit(1)

    logger.info(f"Proxying /api/dv to {settings.dv_internal}")
    logger.info(f"Proxying /api/tv to {settings.tv_internal}")

    app = create_app(settings.dv_internal, settings.tv_internal)
    app.run(host=settings.proxy_host, port=settings.proxy_port, threaded=True)


if __name__ == '__main__':
    main()
