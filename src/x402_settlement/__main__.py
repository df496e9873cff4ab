"""
Run the facilitator.

    python -m x402_settlement

Configuration comes from ``X402_*`` environment variables (see ``config``).
"""

import uvicorn

from x402_settlement.config import get_settings
from x402_settlement.server import create_app


def main() -> None:
    settings = get_settings()
    app = create_app()
    print(f"x402 facilitator listening on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
