import asyncio
import sys

import square
from hypercorn.asyncio import serve
from hypercorn.config import Config

import temporal_operator.api
import temporal_operator.logstreams

if __name__ == "__main__":  # codecov-skip
    square.square.setup_logging(2)
    cfg, err = temporal_operator.api.compile_server_config()
    assert not err

    try:
        temporal_operator.logstreams.setup(cfg.loglevel)
        hypercorn_cfg = Config()
        hypercorn_cfg.bind = [f"{cfg.host}:{cfg.port}"]
        asyncio.run(serve(temporal_operator.api.make_app(), hypercorn_cfg))  # type: ignore
    except KeyboardInterrupt:
        print("User abort")
        sys.exit(1)
