#!/usr/bin/env python3
"""
Development server runner.

Usage: ./run.py [config.json]

The scheduler runs in the reloader child process only.
"""
import os
import sys

from pgbackup import create_app
from pgbackup.settings import load_settings

if __name__ == '__main__':
    settings = load_settings(sys.argv[1]) if len(sys.argv) > 1 else None
    app = create_app('development', settings=settings)

    port = int(os.environ.get('PORT', 5000))
    app.run(host='127.0.0.1', port=port, debug=True)
