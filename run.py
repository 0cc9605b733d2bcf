"""Local development entry point.

Usage:
    python run.py

Webhook workers run inside this process. With the debug reloader on,
Flask starts the app twice, so the reloader is disabled here.
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from billsync import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001, use_reloader=False)
