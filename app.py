"""
app.py

Entry point for the LogoForge API.

    gunicorn app:app
    flask --app app billing retry-events
"""

import os

from logoforge import create_app

app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    app.run(host='0.0.0.0', port=port, debug=debug)
