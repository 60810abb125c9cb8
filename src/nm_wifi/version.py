"""Package version shared by the HTTP app and the CLI."""

APP_VERSION = "0.3.0"
