import uvicorn

from markbook.config.settings import settings


def main() -> None:
    uvicorn.run("markbook.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
