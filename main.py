#!/usr/bin/env python3
"""
Launcher for clipwatch.

- Records the desktop into rotating segments (ffmpeg)
- Listens to the remote log stream and captures evidence on keywords
- Serves the evidence browser on http://localhost:10189
- Ctrl-C exits cleanly
"""

import sys

from clipwatch.web_server import cli_main

if __name__ == "__main__":
    sys.exit(cli_main())
