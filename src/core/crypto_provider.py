"""
BASCULE - Crypto Provider Implementation
Signature ECDSA-P384 des événements de déploiement.

Les clés sont générées à la demande par key_id. Elles peuvent être exportées
en PEM (clé privée pour reprise après redémarrage, clé publique pour les
consommateurs d'audit qui vérifient hors du contrôleur).
"""

from typing import Dict, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .interfaces import ICryptoProvider

_SIGNATURE_ALGORITHM = ec.ECDSA(hashes.SHA384())


class KeyImportError(Exception):
    """Clé PEM illisible ou d'un autre type que EC P-384."""

    pass


def _load_public_key(public_pem: str) -> ec.EllipticCurvePublicKey:
    try:
        key = serialization.load_pem_public_key(public_pem.encode("ascii"))
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyImportError(f"Invalid public key: {e}")
    if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(key.curve, ec.SECP384R1):
        raise KeyImportError("Public key must be ECDSA P-384")
    return key


def verify_with_public_key(public_pem: str, data: bytes, signature: bytes) -> bool:
    """
    Vérifie une signature avec une clé publique exportée.

    Raises:
        KeyImportError: Clé publique invalide
    """
    try:
        _load_public_key(public_pem).verify(signature, data, _SIGNATURE_ALGORITHM)
        return True
    except InvalidSignature:
        return False


class CryptoProvider(ICryptoProvider):
    """Trousseau ECDSA-P384 en mémoire, une clé par key_id."""

    def __init__(self) -> None:
        self._keys: Dict[str, ec.EllipticCurvePrivateKey] = {}

    def _key(self, key_id: str) -> ec.EllipticCurvePrivateKey:
        key = self._keys.get(key_id)
        if key is None:
            key = ec.generate_private_key(ec.SECP384R1())
            self._keys[key_id] = key
        return key

    def sign(self, data: bytes, key_id: str) -> bytes:
        """Signe data (DER), crée la clé au premier usage."""
        return self._key(key_id).sign(data, _SIGNATURE_ALGORITHM)

    def verify_signature(self, data: bytes, signature: bytes, key_id: str) -> bool:
        """False si la clé est inconnue ou la signature invalide."""
        key = self._keys.get(key_id)
        if key is None:
            return False
        try:
            key.public_key().verify(signature, data, _SIGNATURE_ALGORITHM)
            return True
        except InvalidSignature:
            return False

    def public_key_pem(self, key_id: str) -> str:
        """Clé publique SubjectPublicKeyInfo (PEM)."""
        return self._key(key_id).public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def export_private_key(self, key_id: str, passphrase: Optional[bytes] = None) -> str:
        """
        Clé privée PKCS8 (PEM), chiffrée si passphrase fournie.

        Permet de conserver la même clé de signature après redémarrage.
        """
        if passphrase:
            encryption: serialization.KeySerializationEncryption = (
                serialization.BestAvailableEncryption(passphrase)
            )
        else:
            encryption = serialization.NoEncryption()
        return self._key(key_id).private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        ).decode("ascii")

    def import_private_key(self, key_id: str, private_pem: str, passphrase: Optional[bytes] = None) -> None:
        """
        Installe une clé exportée sous key_id (remplace l'existante).

        Raises:
            KeyImportError: PEM illisible, passphrase erronée ou clé non P-384
        """
        try:
            key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=passphrase)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyImportError(f"Invalid private key for {key_id}: {e}")
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP384R1):
            raise KeyImportError(f"Key {key_id} must be ECDSA P-384")
        self._keys[key_id] = key
