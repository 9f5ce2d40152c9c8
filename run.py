#!/usr/bin/env python3
"""
Run script for the Lessonflow backend
"""
import uvicorn

from lessonflow.config.settings import settings
from lessonflow.main import app

if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, reload=settings.debug)
