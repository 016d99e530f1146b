from __future__ import annotations

from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings
from django.db import models


def _get_cipher() -> MultiFernet | None:
    keys = [key for key in getattr(settings, "FERNET_KEYS", []) if key]
    if not keys:
        return None
    # The first key encrypts; every key is tried for decryption so keys can rotate.
    return MultiFernet([Fernet(key.encode("utf-8")) for key in keys])


class EncryptedCharField(models.CharField):
    """CharField storing provider identifiers encrypted at rest.

    Ciphertexts are not deterministic, so the column cannot be filtered on.
    Look rows up by their own keys and read the identifier back.
    """

    def get_prep_value(self, value: Any):
        value = super().get_prep_value(value)
        if value in (None, ""):
            return value
        cipher = _get_cipher()
        if cipher is None:
            return value
        return cipher.encrypt(str(value).encode("utf-8")).decode("utf-8")

    def from_db_value(self, value, expression, connection):
        if value in (None, ""):
            return value
        return self.to_python(value)

    def to_python(self, value: Any):
        if value in (None, "") or not isinstance(value, str):
            return value
        cipher = _get_cipher()
        if cipher is None:
            return value
        try:
            return cipher.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            # Plain values written before encryption was configured.
            return value
