from cryptography.fernet import Fernet, InvalidToken

from jira_sync.config import settings


def get_fernet_key() -> Fernet:
    """Returns the Fernet instance for the configured key."""
    if not settings.encryption_key:
        raise ValueError("ENCRYPTION_KEY is not set; cannot store or read the Jira API token")
    return Fernet(settings.encryption_key.encode('utf-8'))


def encrypt_data(data: str) -> str:
    """Encrypts a string using Fernet."""
    f = get_fernet_key()
    return f.encrypt(data.encode('utf-8')).decode('utf-8')


def decrypt_data(encrypted_data: str) -> str:
    """Decrypts a string using Fernet."""
    f = get_fernet_key()
    try:
        return f.decrypt(encrypted_data.encode('utf-8')).decode('utf-8')
    except InvalidToken:
        raise ValueError("Stored Jira API token cannot be decrypted with the configured ENCRYPTION_KEY")
