import uvicorn

from fluzio_points.core.settings import settings


def main() -> None:
    uvicorn.run(
        "fluzio_points.app:create_app",
        factory=True,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":
    main()
