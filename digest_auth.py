"""
HTTP Digest authentication against PTS-2 controllers.

The controller answers an unauthenticated request with 401 and a
WWW-Authenticate: Digest challenge; every following request carries an
Authorization header computed from that challenge (RFC 2617 / RFC 7616,
qop=auth).
"""

import hashlib
import logging
import secrets
from typing import Dict, Optional

import requests

from errors import AuthChallengeMissing, AuthError, AuthTransportError
from models import ControllerEndpoint, DigestChallenge, DigestCredential


# Digest algorithm token -> hashlib name
DIGEST_ALGORITHMS = {
    "MD5": "md5",
    "SHA-256": "sha256",
    "SHA-512-256": "sha512_256",
}

_log = logging.getLogger("DigestSession")


def _hash_name(algorithm: str) -> str:
    base = algorithm.upper()
    if base.endswith("-SESS"):
        base = base[: -len("-SESS")]
    try:
        return DIGEST_ALGORITHMS[base]
    except KeyError:
        raise AuthError(f"Unsupported digest algorithm: {algorithm}") from None


def _h(algorithm: str, value: str) -> str:
    digest = hashlib.new(_hash_name(algorithm))
    digest.update(value.encode("utf-8"))
    return digest.hexdigest()


def compute_digest_response(
    username: str,
    password: str,
    realm: str,
    nonce: str,
    nonce_count: int,
    client_nonce: str,
    qop: str,
    method: str,
    uri: str,
    algorithm: str = "MD5",
) -> str:
    """response = H(HA1:nonce:nc:cnonce:qop:HA2)"""
    ha1 = _h(algorithm, f"{username}:{realm}:{password}")
    if algorithm.upper().endswith("-SESS"):
        ha1 = _h(algorithm, f"{ha1}:{nonce}:{client_nonce}")
    ha2 = _h(algorithm, f"{method}:{uri}")
    nc = f"{nonce_count:08x}"
    return _h(algorithm, f"{ha1}:{nonce}:{nc}:{client_nonce}:{qop}:{ha2}")


def _parse_params(text: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    i, n = 0, len(text)

    while i < n:
        while i < n and text[i] in " \t,":
            i += 1
        if i >= n:
            break

        eq = text.find("=", i)
        if eq < 0:
            raise AuthChallengeMissing(f"Malformed challenge parameter: {text[i:]!r}")
        key = text[i:eq].strip().lower()
        if not key or any(c in key for c in ' \t,"'):
            raise AuthChallengeMissing(f"Malformed challenge key: {text[i:eq]!r}")

        i = eq + 1
        while i < n and text[i] in " \t":
            i += 1

        if i < n and text[i] == '"':
            i += 1
            chars = []
            while i < n and text[i] != '"':
                if text[i] == "\\" and i + 1 < n:
                    i += 1
                chars.append(text[i])
                i += 1
            if i >= n:
                raise AuthChallengeMissing(f"Unterminated quoted value for {key!r}")
            i += 1
            value = "".join(chars)
            while i < n and text[i] in " \t":
                i += 1
            if i < n and text[i] != ",":
                raise AuthChallengeMissing(f"Unexpected text after {key!r}: {text[i:]!r}")
        else:
            end = text.find(",", i)
            if end < 0:
                end = n
            value = text[i:end].strip()
            i = end

        params[key] = value

    return params


def parse_challenge(header: Optional[str]) -> DigestChallenge:
    """
    Parse a WWW-Authenticate header into a DigestChallenge.

    Raises AuthChallengeMissing instead of returning empty fields when the
    header is absent, is not a Digest challenge, or is malformed.
    """
    if not header or not header.strip():
        raise AuthChallengeMissing("No WWW-Authenticate header")

    scheme, _, rest = header.strip().partition(" ")
    if scheme.lower() != "digest":
        raise AuthChallengeMissing(f"Not a Digest challenge: {scheme}")

    params = _parse_params(rest)
    realm = params.get("realm")
    nonce = params.get("nonce")
    if realm is None or not nonce:
        raise AuthChallengeMissing("Challenge is missing realm or nonce")

    qop = "auth"
    if "qop" in params:
        offered = [q.strip().lower() for q in params["qop"].split(",") if q.strip()]
        if "auth" not in offered:
            raise AuthChallengeMissing(f"Unsupported qop: {params['qop']}")

    return DigestChallenge(
        realm=realm,
        nonce=nonce,
        qop=qop,
        opaque=params.get("opaque"),
        algorithm=params.get("algorithm"),
    )


class DigestSession:
    """
    Performs the challenge/response handshake and signs follow-up requests.

    The hash algorithm is a property of the session (default MD5); a
    challenge naming its own algorithm overrides it.
    """

    def __init__(
        self,
        http: Optional[requests.Session] = None,
        algorithm: str = "MD5",
        timeout: float = 5.0,
        verify: bool = True,
    ):
        _hash_name(algorithm)
        self.http = http or requests.Session()
        self.algorithm = algorithm
        self.timeout = timeout
        self.verify = verify

    def authenticate(self, endpoint: ControllerEndpoint, method: str, request_uri: str) -> DigestCredential:
        """Request a challenge from the endpoint and build the first credential (nc=1)"""
        url = f"{endpoint.base_url}{request_uri}"
        _log.debug(f"Requesting digest challenge from {url}")

        try:
            # Only status and headers are needed; the body is never read
            response = self.http.request(method, url, timeout=self.timeout, verify=self.verify, stream=True)
        except requests.RequestException as e:
            _log.error(f"Digest challenge request to {url} failed: {e}")
            raise AuthTransportError(f"Digest challenge request failed: {e}") from e

        try:
            if response.status_code != 401:
                _log.error(f"Digest auth not requested by {url} (HTTP {response.status_code})")
                raise AuthChallengeMissing(f"Expected HTTP 401, got {response.status_code}")
            header = response.headers.get("WWW-Authenticate")
        finally:
            response.close()

        challenge = parse_challenge(header)
        algorithm = challenge.algorithm or self.algorithm
        client_nonce = secrets.token_hex(8)

        credential = DigestCredential(
            username=endpoint.login,
            realm=challenge.realm,
            nonce=challenge.nonce,
            uri=request_uri,
            qop=challenge.qop,
            nonce_count=1,
            client_nonce=client_nonce,
            computed_response=compute_digest_response(
                endpoint.login,
                endpoint.password,
                challenge.realm,
                challenge.nonce,
                1,
                client_nonce,
                challenge.qop,
                method,
                request_uri,
                algorithm,
            ),
            algorithm=algorithm,
            algorithm_explicit=challenge.algorithm is not None,
            opaque=challenge.opaque,
        )
        _log.info(f"Digest challenge accepted for {endpoint.host}:{endpoint.port} (realm={challenge.realm})")
        return credential

    def advance(
        self,
        credential: DigestCredential,
        endpoint: ControllerEndpoint,
        method: str,
        request_uri: str,
    ) -> DigestCredential:
        """Next credential for the same nonce, with nonce_count + 1"""
        nonce_count = credential.nonce_count + 1
        return credential.model_copy(
            update={
                "uri": request_uri,
                "nonce_count": nonce_count,
                "computed_response": compute_digest_response(
                    endpoint.login,
                    endpoint.password,
                    credential.realm,
                    credential.nonce,
                    nonce_count,
                    credential.client_nonce,
                    credential.qop,
                    method,
                    request_uri,
                    credential.algorithm,
                ),
            }
        )
