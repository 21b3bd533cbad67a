"""
Vercel serverless function handler for the FastAPI backend
"""
import sys
import os
from pathlib import Path

# Set Vercel environment flag before any imports
os.environ["VERCEL"] = "1"

# Add backend directory to path
backend_dir = Path(__file__).parent.parent / "backend"
sys.path.insert(0, str(backend_dir))

os.environ.setdefault("PYTHONPATH", str(backend_dir))

# Vercel injects env vars directly; .env is only for local testing
from dotenv import load_dotenv
load_dotenv()

from mangum import Mangum

# Import the FastAPI app (this will detect serverless mode)
from main import app

# Lifespan is off: serverless platforms do not deliver startup/shutdown reliably
handler = Mangum(app, lifespan="off")
