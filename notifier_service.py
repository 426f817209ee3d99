#!/usr/bin/env python3
"""
Shim module delegating to loki_notifier.notifier_service.
Lets gunicorn load the app from the repository root:

    gunicorn --bind 0.0.0.0:7777 'notifier_service:create_app()'
"""

from loki_notifier.notifier_service import create_app, main  # noqa: F401


if __name__ == '__main__':
    main()
