"""``python -m sprinklersync`` entrypoint."""

from sprinklersync import App, __version__


def main() -> None:
    App(version=__version__).cli()


if __name__ == "__main__":
    main()
