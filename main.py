#!/usr/bin/env python3
"""
NLB Load Testing Application

A soak-test tool that keeps a clustered, load-balanced content repository busy
while an index and database backup runs against it.

Features:
- Concurrent writer drivers uploading, counting and deleting files
- Concurrent reader drivers running file, folder and user queries
- One-shot index backup with marker records, followed by a SQL Server backup
- Metrics collection with OpenTelemetry
- Environment variable and YAML/JSON configuration support
"""

from cli import cli

if __name__ == '__main__':
    cli()
