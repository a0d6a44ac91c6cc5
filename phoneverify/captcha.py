import logging
from typing import Optional

import httpx


logger = logging.getLogger("phoneverify.captcha")


class CaptchaVerifier:
    """Checks captcha tokens against a siteverify endpoint.

    Without a secret only the presence of a token is required.
    """

    def __init__(
        self,
        secret: str = "",
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        timeout: float = 4.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self.transport = transport

    def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> bool:
        if not token:
            return False
        if not self.secret:
            return True
        data = {"secret": self.secret, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(self.verify_url, data=data)
            if resp.status_code >= 400:
                logger.warning("Captcha verify returned %s", resp.status_code)
                return False
            return bool((resp.json() or {}).get("success"))
        except (httpx.HTTPError, ValueError) as exc:
            # an unverifiable token does not satisfy the requirement
            logger.warning("Captcha verify failed: %s", exc.__class__.__name__)
            return False
