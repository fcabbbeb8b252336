# in tests/host_backend.py
import uvicorn
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

print("--- Running billing backend against the configured database ---")

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    src_path = str(PROJECT_ROOT / "src")

    uvicorn.run(
        "lingua_school_backend.main:app",
        host="127.0.0.1",
        port=port,
        reload=True,
        reload_dirs=[src_path]
    )
