#!/usr/bin/env python3
"""Run the backup service with Flask's built-in server."""
import os
from ipfs_backup import create_app

if __name__ == '__main__':
    app = create_app(os.environ.get('FLASK_ENV', 'development'))

    port = int(os.environ.get('PORT', 5000))
    app.run(host=os.environ.get('HOST', '127.0.0.1'), port=port, debug=app.config.get('DEBUG', False))
