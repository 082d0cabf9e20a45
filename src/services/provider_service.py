"""Provider records with encrypted API keys.

API keys are encrypted before they reach the database and decrypted only
when a sync pushes them into a container. Each envelope is bound to its
provider id, so a ciphertext copied onto another row does not decrypt.
"""

import logging

from sqlalchemy.orm import Session

from src.db.models import Instance, Provider, ProviderType, generate_uuid, utc_now_iso
from src.errors.domain import NotFoundError, ValidationError
from src.services.credential_encryption import (
    decrypt_secret,
    encrypt_secret,
    get_or_create_key,
    provider_aad,
)

logger = logging.getLogger(__name__)


class ProviderService:
    """CRUD for providers of one panel database.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session, key: bytes | None = None) -> None:
        self.db = db
        self._key = key

    @property
    def key(self) -> bytes:
        if self._key is None:
            self._key = get_or_create_key()
        return self._key

    def create_provider(
        self,
        instance_id: str,
        provider_type: ProviderType | str,
        name: str,
        api_key: str,
        base_url: str | None = None,
        model: str | None = None,
        is_default: bool = False,
        priority: int = 0,
    ) -> Provider:
        """Store a provider with its API key encrypted.

        Raises:
            NotFoundError: If the instance does not exist.
            ValidationError: If the type is unknown or the key is empty.
        """
        if self.db.get(Instance, instance_id) is None:
            raise NotFoundError("Instance", instance_id)
        try:
            ptype = ProviderType(provider_type)
        except ValueError as e:
            raise ValidationError(f"Unknown provider type '{provider_type}'") from e
        if not api_key:
            raise ValidationError("Provider API key must not be empty")

        provider_id = generate_uuid()
        provider = Provider(
            id=provider_id,
            instance_id=instance_id,
            type=ptype.value,
            name=name,
            encrypted_api_key=encrypt_secret(api_key, self.key, provider_aad(provider_id)),
            base_url=base_url,
            model=model,
            is_default=is_default,
            priority=priority,
        )
        if is_default:
            self._clear_default(instance_id)
        self.db.add(provider)
        self.db.commit()
        self.db.refresh(provider)
        logger.info("Created %s provider %s for instance %s", ptype.value, provider_id, instance_id)
        return provider

    def get_provider(self, provider_id: str) -> Provider | None:
        return self.db.query(Provider).filter(Provider.id == provider_id).first()

    def list_active(self, instance_id: str) -> list[Provider]:
        """Active providers ordered by priority, then creation time."""
        return (
            self.db.query(Provider)
            .filter(Provider.instance_id == instance_id, Provider.is_active.is_(True))
            .order_by(Provider.priority, Provider.created_at)
            .all()
        )

    def update_provider(
        self,
        provider_id: str,
        *,
        name: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        is_active: bool | None = None,
        is_default: bool | None = None,
        priority: int | None = None,
    ) -> Provider:
        """Update selected fields; a new api_key is re-encrypted.

        Raises:
            NotFoundError: If the provider does not exist.
        """
        provider = self.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Provider", provider_id)

        if name is not None:
            provider.name = name
        if api_key:
            provider.encrypted_api_key = encrypt_secret(api_key, self.key, provider_aad(provider.id))
        if base_url is not None:
            provider.base_url = base_url or None
        if model is not None:
            provider.model = model or None
        if is_active is not None:
            provider.is_active = is_active
        if priority is not None:
            provider.priority = priority
        if is_default is True:
            self._clear_default(provider.instance_id)
        if is_default is not None:
            provider.is_default = is_default

        provider.updated_at = utc_now_iso()
        self.db.commit()
        self.db.refresh(provider)
        return provider

    def delete_provider(self, provider_id: str) -> bool:
        provider = self.get_provider(provider_id)
        if provider is None:
            return False
        self.db.delete(provider)
        self.db.commit()
        return True

    def decrypt_api_key(self, provider: Provider) -> str:
        """Return the plaintext API key.

        Raises:
            CredentialDecryptionError: If the envelope cannot be decrypted
                with the current key.
        """
        return decrypt_secret(provider.encrypted_api_key, self.key, provider_aad(provider.id))

    def _clear_default(self, instance_id: str) -> None:
        (
            self.db.query(Provider)
            .filter(Provider.instance_id == instance_id, Provider.is_default.is_(True))
            .update({Provider.is_default: False}, synchronize_session="fetch")
        )
