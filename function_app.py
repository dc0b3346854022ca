import azure.functions as func
from dotenv import load_dotenv

# Load local .env for dev convenience (local.settings.json is handled by Functions host)
load_dotenv()

from shared.db import init_db  # noqa: E402

# Create tables if they don't exist; runs once when the Functions host starts.
init_db()

app = func.FunctionApp()

# Import endpoint modules and triggers so they register with the shared app.
import health_endpoints  # noqa: E402,F401
import duplicates_endpoints  # noqa: E402,F401
import duplicate_detection_worker  # noqa: E402,F401
