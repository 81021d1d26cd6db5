"""
Threadline Backend Runner
Run with: python run.py
"""

import uvicorn
from threadline.config import settings


if __name__ == "__main__":
    print(f"""
    Threadline - streaming chat backend

    Starting server at http://{settings.HOST}:{settings.PORT}

    API Documentation: http://localhost:{settings.PORT}/docs
    """)

    uvicorn.run(
        "threadline.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
