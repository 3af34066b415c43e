# exam_portal/wsgi.py
import os

from .app import create_app

# Use the app instance created by the factory
app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5001))
    # Debug should be False in production, controlled by an environment variable
    debug_mode = os.environ.get('FLASK_DEBUG', 'False').lower() in ('true', '1', 't')
    app.run(host='0.0.0.0', port=port, debug=debug_mode)
