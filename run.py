import os

import uvicorn

from iptv_proxy.main import app

# Run the proxy
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
