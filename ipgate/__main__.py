import logging
import sys

import uvicorn

from ipgate.config import ConfigError, load_settings
from ipgate.gateway import create_app


def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"ipgate: configuration error: {exc}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info(
        "listening: addr=%s:%d tls=%s target=%s",
        settings.listen_host,
        settings.listen_port,
        settings.use_tls,
        settings.target,
    )

    uvicorn.run(
        create_app(settings),
        host=settings.listen_host,
        port=settings.listen_port,
        ssl_certfile=settings.tls_cert or None,
        ssl_keyfile=settings.tls_key or None,
        log_level=settings.log_level.lower(),
        proxy_headers=False,
    )


if __name__ == "__main__":
    main()
