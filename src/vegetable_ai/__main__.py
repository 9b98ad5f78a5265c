from __future__ import annotations

import uvicorn

from .config import Settings


def main() -> None:
    s = Settings.load()
    uvicorn.run("vegetable_ai.api.app:app", host="0.0.0.0", port=s.app.port, log_config=None)


if __name__ == "__main__":
    main()
