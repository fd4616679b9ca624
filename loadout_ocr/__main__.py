import uvicorn

from loadout_ocr.config import ServiceSettings


def main() -> None:
    settings = ServiceSettings.from_env()
    # one worker: live subscribers and the store lock are process-local
    uvicorn.run("loadout_ocr.app:app", host=settings.host, port=settings.port, workers=1)


if __name__ == "__main__":
    main()
