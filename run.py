#!/usr/bin/env python3
"""Backup runner (point cron or a systemd timer at this script)"""
import sys
from projbackup.cli import main

if __name__ == '__main__':
    sys.exit(main())
