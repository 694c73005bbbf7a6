# server/app/main.py
import logging
import uvicorn
from . import config


def configure_logging(level: str = config.LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run():
    configure_logging()
    logging.getLogger(__name__).info("starting courier server on %s:%s", config.HOST, config.PORT)
    uvicorn.run('server.app.api:app', host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL)


if __name__ == '__main__':
    run()
