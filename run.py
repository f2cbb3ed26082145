import os
import sys

import uvicorn
from dotenv import load_dotenv

if __name__ == "__main__":
    load_dotenv()

    # Stories cannot be written without a key; illustrations degrade on their own
    required_vars = ["OPENAI_API_KEY"]
    missing_vars = [var for var in required_vars if not os.getenv(var)]

    if missing_vars:
        print(f"Error: Missing required environment variables: {', '.join(missing_vars)}")
        print("Please check your .env file")
        sys.exit(1)

    print("Starting Dreamlets API server...")

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT", "development") == "development"
    )
