import uvicorn

from coupon_insights.core.app import create_app
from coupon_insights.core.config import get_settings

app = create_app()


def run() -> None:
    """Entrypoint for `coupon-insights-api` script."""
    settings = get_settings()
    uvicorn.run(
        "coupon_insights.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        factory=False,
    )


if __name__ == "__main__":
    run()
