"""Local development entry point.

Usage:
    python run.py

Serves the webhook, checkout and billing endpoints on port 5001. Point
`stripe listen --forward-to localhost:5001/webhook` at it to replay
gateway events locally.
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before the config classes read the environment

from billing_engine import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
