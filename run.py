# run.py
import uvicorn
import os
from dotenv import load_dotenv

# Load environment variables from the .env file
load_dotenv()

if __name__ == "__main__":
    # Host and port from the environment, or the defaults
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", 8000))

    # reload=True restarts the server on code changes, useful in development
    reload = os.getenv("ENVIRONMENT", "development").lower() != "production"
    uvicorn.run("tracklock.main:create_app", factory=True, host=host, port=port, reload=reload)
