from __future__ import annotations

import os
from http.server import BaseHTTPRequestHandler, HTTPServer

FLAG = os.getenv("FLAG", "lactf{3xampl3_fl4g}")


class Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.end_headers()
        self.wfile.write(b"encrypt something: /?pt=<hex>\n")


if __name__ == "__main__":
    HTTPServer(("0.0.0.0", 8080), Handler).serve_forever()
