from appctl.cli.app.commands import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
