import os

import uvicorn


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    # Boot the FastAPI app built by cat_explorer.main.create_app
    uvicorn.run("cat_explorer.main:create_app", factory=True, host="0.0.0.0", port=port, reload=True)
