"""
使用方式:
    python -m change_aggregator
    或
    change-aggregator
"""

from change_aggregator.main import cli

if __name__ == "__main__":
    cli()
