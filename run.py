"""
RUN SCRIPT
==========

Starts the ClassChat API with uvicorn on port 8000 (auto-reload on).
Set GROQ_API_KEY and JWT_SECRET_KEY in .env first; see .env.example.
"""

import uvicorn


if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
