"""Allow running with: python -m gateway"""
import uvicorn

from gateway.config import HOST, PORT

if __name__ == "__main__":
    uvicorn.run("gateway.app:app", host=HOST, port=PORT, reload=False)
