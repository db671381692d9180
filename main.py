import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()


def main():
    # Single worker: the discovery queue assumes one process owns it
    uvicorn.run(
        "episodarr.main:app",
        host=os.getenv("EPISODARR_HOST", "127.0.0.1"),
        port=int(os.getenv("EPISODARR_PORT", "8000")),
        workers=1,
    )


if __name__ == "__main__":
    main()
