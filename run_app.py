"""Top-level launcher.

Runs the CLI with a proper package context so the relative imports inside
`slicepilot` resolve both from source and when frozen.
"""

from slicepilot.main import cli


if __name__ == "__main__":
    cli()
