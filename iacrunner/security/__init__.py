"""Security module for secret decryption and masking."""

from .secrets import SecretCipher, SecretsMasker, SecretsMaskingFilter, SECRET_VALUE_PREFIX

__all__ = ['SecretCipher', 'SecretsMasker', 'SecretsMaskingFilter', 'SECRET_VALUE_PREFIX']
