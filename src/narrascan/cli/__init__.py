def main() -> None:
    """CLI entrypoint for the narrascan console script."""
    from narrascan.cli.app import app

    app()
