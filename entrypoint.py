"""
Entrypoint for running the API server.
"""
import os

import uvicorn

from wishkeep.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
