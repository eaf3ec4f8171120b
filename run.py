import uvicorn
from tunnelctl.logging_utility import logger


if __name__=='__main__':
    logger.info("Starting tunnelctl control API")
    # uvicorn.run(app, host="127.0.0.1", port=8000)
    uvicorn.run("tunnelctl.main:app", host="127.0.0.1", port=8000)
