from fastapi import FastAPI, Request

app = FastAPI(title="Demo Upstream App")


@app.get("/")
def home():
    return {"status": "ok", "message": "Hello from upstream"}


@app.api_route("/echo/{rest:path}", methods=["GET", "POST", "PUT", "DELETE"])
async def echo(rest: str, request: Request):
    body = await request.body()
    return {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query,
        "host": request.headers.get("host"),
        "authorization": request.headers.get("authorization"),
        "body": body.decode("utf-8", errors="ignore"),
    }
