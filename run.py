"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py init-db
    flask --app run.py seed-demo
    flask --app run.py --debug run

Production: serve `run:app` with a WSGI server and set SECRET_KEY,
DATABASE_URL (postgresql://...) and FLASK_ENV=production.
"""

from stockroom import create_app

# WSGI application object (`flask run` looks for `app`).
app = create_app()

if __name__ == "__main__":
    # Dev only.
    app.run(debug=True)
