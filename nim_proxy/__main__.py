import sys

import uvicorn

from .config import settings
from .router import public_model_ids


def main():
    print(f"[proxy] NIM proxy listening on {settings.host}:{settings.port}", file=sys.stderr)
    print("[proxy] Models:", ", ".join(public_model_ids()), file=sys.stderr)
    uvicorn.run("nim_proxy.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
