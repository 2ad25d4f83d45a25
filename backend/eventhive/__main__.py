import uvicorn

from .config import settings


def main():
    uvicorn.run(
        "eventhive.api:asgi_app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
