#!/usr/bin/env -S uv --quiet run --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "click",
#     "rich",
#     "PyYAML",
# ]
# ///

from gitdeck.cli import main


if __name__ == "__main__":
    main()
