import uvicorn

from proxy_dispatch.vars import HOST, PORT

if __name__ == "__main__":
    uvicorn.run("proxy_dispatch.server:app", host=HOST, port=PORT)
