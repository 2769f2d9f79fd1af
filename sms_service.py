# sms_service.py
import re
import time
import random
from typing import Any, Dict, Optional

import requests
from unidecode import unidecode

from config import settings


def format_phone_number(tp_no: str) -> str:
    """Normalize a local or international mobile number to the 94XXXXXXXXX form."""
    digits = re.sub(r"\D", "", tp_no or "")
    if len(digits) == 9:
        return "94" + digits
    if len(digits) == 10 and digits.startswith("07"):
        return "94" + digits[1:]
    if digits.startswith("94"):
        return digits
    return "94" + digits.lstrip("0")


class SmsSendError(Exception):
    pass


class SmsService:
    """Bearer-token SMS portal client: authenticate, then submit one message."""

    def __init__(self, auth_url: str, sms_url: str, username: str, password: str,
                 campaign_name: Optional[str] = None, mask: Optional[str] = None,
                 timeout: float = settings.sms_timeout_seconds):
        if not all([auth_url, sms_url, username, password]):
            raise ValueError("SMS portal URLs and credentials are required.")
        self.auth_url = auth_url
        self.sms_url = sms_url
        self.username = username
        self.password = password
        self.campaign_name = campaign_name
        self.mask = mask
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", "Accept": "*/*", "X-API-VERSION": "v1"}

    @classmethod
    def from_config(cls, config) -> "SmsService":
        return cls(
            auth_url=config.auth_url,
            sms_url=config.sms_url,
            username=config.username,
            password=config.password,
            campaign_name=config.campaign_name,
            mask=config.sms_mask,
        )

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> requests.Response:
        max_retries = 3
        base_delay = 0.5
        for attempt in range(max_retries):
            try:
                response = requests.post(url, headers=headers, json=payload, timeout=self.timeout)
                if response.status_code >= 500 and attempt < max_retries - 1:
                    time.sleep(base_delay * (2 ** attempt) + random.uniform(0, 0.5))
                    continue
                return response
            except requests.exceptions.RequestException:
                if attempt < max_retries - 1:
                    time.sleep(base_delay * (2 ** attempt) + random.uniform(0, 0.5))
                else:
                    raise
        raise SmsSendError("Max retries reached. Could not reach the SMS portal.")

    def _access_token(self) -> str:
        response = self._post(self.auth_url, {"username": self.username, "password": self.password}, self.headers)
        try:
            token = response.json().get("accessToken")
        except ValueError:
            token = None
        if not token:
            raise SmsSendError("Failed to authenticate with SMS provider")
        return token

    def send(self, phone_number: str, message: str) -> None:
        """Raises SmsSendError unless the portal accepted the message."""
        token = self._access_token()
        headers = dict(self.headers, Authorization=f"Bearer {token}")
        payload = {
            "campaignName": self.campaign_name,
            "mask": self.mask,
            "numbers": format_phone_number(phone_number),
            "content": unidecode(message),
            "deliveryReportRequest": False,
        }
        response = self._post(self.sms_url, payload, headers)
        try:
            data = response.json()
        except ValueError:
            data = {}

        status = str(data.get("status") or data.get("result") or "").lower()
        accepted = (
            status in ("success", "sent")
            or data.get("success") is True
            or (response.ok and not data.get("error") and "error" not in str(data.get("message") or "").lower())
        )
        if not accepted:
            raise SmsSendError(data.get("error") or data.get("message") or "SMS provider did not accept the message")
