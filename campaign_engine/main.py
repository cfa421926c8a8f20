"""ASGI entry point: ``uvicorn campaign_engine.main:app``."""

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, **config.get_uvicorn_config())
