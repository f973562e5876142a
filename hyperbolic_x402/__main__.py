"""Run the proxy with uvicorn: ``python -m hyperbolic_x402``."""

import uvicorn
from dotenv import load_dotenv

from hyperbolic_x402.app import create_app
from hyperbolic_x402.config import load_config


def main() -> None:
    load_dotenv()
    config = load_config()

    uvicorn.run(
        create_app(config),
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level if config.log_level != "warn" else "warning",
    )


if __name__ == "__main__":
    main()
