#!/usr/bin/env python3
import uvicorn
from circa.app import app
from circa.configs import HOST, PORT

if __name__ == "__main__":
    print(f"Starting uvicorn server on port {PORT}...")
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")
