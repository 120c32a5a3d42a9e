import asyncio
import json
import logging
import ssl
from pathlib import Path
from typing import Tuple
from urllib.parse import urlparse

import httpx
import square.k8s
import tenacity as tc
from square.dtypes import ConnectionParameters, K8sConfig

# Define the exceptions we want to retry on.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, asyncio.TimeoutError)


# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("k8s")


def _on_backoff(retry_state: tc.RetryCallState):
    """Log a warning on each retry."""
    attempt = retry_state.attempt_number
    k8sconfig, method, url = retry_state.args[:3]
    path = urlparse(url).path

    logit.warning(f"Back off {attempt} - {k8sconfig.name} - {method} {path}.")


async def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    await asyncio.sleep(delay)


@tc.retry(
    stop=(tc.stop_after_delay(300) | tc.stop_after_attempt(8)),
    wait=tc.wait_exponential(multiplier=1, min=0, max=20) + tc.wait_random(0, 2),
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_on_backoff,
    reraise=True,
    sleep=_mysleep,
)
async def _call(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None,
    headers: dict | None,
) -> httpx.Response:
    return await k8sconfig.client.request(method, url, json=payload, headers=headers)


async def request(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None = None,
    headers: dict | None = None,
) -> Tuple[dict, int, bool]:
    """Return response of web request made with `client`.

    Inputs:
        k8sconfig: K8sConfig
            Cluster configuration with an HttpX client that has the correct
            K8s certificates and base URL.
        url: str
            Eg `/api/v1/namespaces`.
        payload: dict
            Anything that can be JSON encoded, usually a K8s manifest.
        headers: dict
            Request headers. These will *not* replace the existing request
            headers dictionary (eg the access tokens), but augment them.

    Returns:
        (dict, int, bool): the JSON response and the HTTP status code.

    """
    # Make the HTTP request via our backoff/retry handler.
    try:
        ret = await _call(k8sconfig, method, url, payload=payload, headers=headers)
    except WEB_EXCEPTIONS as err:
        logit.error(f"Giving up - {k8sconfig.name} - {err} - {method} {url}")
        return ({}, -1, True)

    # Decode the JSON response and abort if that is impossible.
    try:
        response = json.loads(ret.text) if ret.text else {}
    except json.decoder.JSONDecodeError as err:
        # Some API servers and proxies answer NotFound in plain text.
        if ret.status_code == 404:
            return ({}, 404, False)

        msg = (
            f"JSON error - {k8sconfig.name} - "
            f"{err.msg} in line {err.lineno} column {err.colno}",
            "-" * 80 + "\n" + err.doc + "\n" + "-" * 80,
        )
        logit.error(str.join("\n", msg))
        return ({}, ret.status_code, True)

    # Log the entire request in debug mode.
    logit.debug(
        f"{method} {ret.status_code} {ret.url}\n"
        f"Headers: {headers}\n"
        f"Payload: {payload}\n"
        f"Response: {response}\n"
    )
    return (response, ret.status_code, False)


async def checked_request(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | None,
    expected: Tuple[int, ...],
) -> Tuple[dict, int, bool]:
    """Flag every status code outside `expected` as an error (see `request`)."""
    resp, code, err = await request(k8sconfig, method, url, payload, headers=None)
    if err or code not in expected:
        logit.error(f"{code} - {method} - {url} - {resp}")
        return (resp, code, True)
    return (resp, code, False)


async def delete(k8sconfig: K8sConfig, url: str) -> Tuple[dict, int, bool]:
    """Delete the resource at `url` and its dependents in the background.

    A 404 is not an error because the resource is already gone.

    """
    payload = {"kind": "DeleteOptions", "propagationPolicy": "Background"}
    return await checked_request(k8sconfig, "DELETE", url, payload, (200, 202, 404))


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, int, bool]:
    """A 404 is not an error. Callers use the status code to tell if it exists."""
    return await checked_request(k8sconfig, "GET", url, None, (200, 404))


async def post(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, int, bool]:
    return await checked_request(k8sconfig, "POST", url, payload, (200, 201, 202))


async def put(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, int, bool]:
    """Replace the resource at `url` with `payload`.

    The `payload` must include the `resourceVersion` it was read with. K8s
    rejects the request with 409 if the object has changed in the meantime.

    """
    return await checked_request(k8sconfig, "PUT", url, payload, (200, 201))


def create_cluster_config(kubeconf: Path, context: str) -> Tuple[K8sConfig, bool]:
    """Return the K8s config with an HttpX client bound to the API server."""
    cfg, err = square.k8s.load_auto_config(kubeconf, context)
    if err:
        return K8sConfig(), True

    params = ConnectionParameters(read=600, write=600, pool=600)
    cfg, err = square.k8s.create_httpx_client(cfg, params)
    if err:
        return K8sConfig(), True

    # All callers use paths relative to the API server.
    cfg.client.base_url = cfg.url
    return cfg, False
