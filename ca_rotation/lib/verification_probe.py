"""TLS produce (and optional consume) probe against the cluster's bootstrap listener."""

import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from ssl import SSLContext

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context

from .ca_bundle import issue_leaf_certificate
from .ca_role import CA_CERT_FIELD, CA_KEY_FIELD, CARole
from .cert_utils import create_truststore_bundle
from .config import CAConfig
from .credential_store import CredentialStore
from .exceptions import VerificationTimeoutError
from .models import CredentialRecord, VerificationResult

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 1.0


def trusted_certificates(record: CredentialRecord, include_archived: bool = False) -> bytes:
    """Canonical CA certificate, optionally followed by every archived one still retained."""
    if not include_archived:
        return create_truststore_bundle(record.fields[CA_CERT_FIELD])
    archived = sorted(key for key in record.fields if key.startswith("ca-") and key.endswith(".crt"))
    return create_truststore_bundle(
        record.fields[CA_CERT_FIELD], *(record.fields[key] for key in archived)
    )


@dataclass(frozen=True)
class ClientTlsMaterial:
    """Truststore plus client certificate and key, all PEM."""

    ca_pem: bytes
    cert_pem: bytes
    key_pem: bytes

    @classmethod
    def issue_from_store(
        cls,
        store: CredentialStore,
        cluster_name: str,
        user: str,
        config: CAConfig,
    ) -> "ClientTlsMaterial":
        """Derive probe credentials from the current persisted trust material.

        Brokers are trusted through the current Cluster CA certificate only, so
        a broker still serving a leaf of the superseded key fails the
        handshake. The client certificate is freshly signed with the current Clients CA key.
        """
        cluster_certs = store.read(CARole.CLUSTER.cert_secret_name(cluster_name))
        clients_certs = store.read(CARole.CLIENTS.cert_secret_name(cluster_name))
        clients_key = store.read(CARole.CLIENTS.key_secret_name(cluster_name))

        key_pem, cert_pem = issue_leaf_certificate(
            issuer_cert_pem=clients_certs.fields[CA_CERT_FIELD],
            issuer_key=clients_key.fields[CA_KEY_FIELD],
            common_name=user,
            config=config,
        )
        logger.info("Issued probe client certificate for user %s", user)
        return cls(ca_pem=trusted_certificates(cluster_certs), cert_pem=cert_pem, key_pem=key_pem)

    def ssl_context(self) -> SSLContext:
        """Build a client SSL context; key files exist only while it loads."""
        with tempfile.TemporaryDirectory(prefix="ca-rotation-probe-") as tmp:
            cert_path = Path(tmp) / "user.crt"
            key_path = Path(tmp) / "user.key"
            cert_path.write_bytes(self.cert_pem)
            key_path.write_bytes(self.key_pem)
            return create_ssl_context(
                cadata=self.ca_pem.decode("ascii"),
                certfile=str(cert_path),
                keyfile=str(key_path),
            )


class _Progress:
    def __init__(self) -> None:
        self.acknowledged = 0
        self.consumed = 0


class VerificationProbe:
    """Produces messages over TLS and counts broker acknowledgements."""

    def __init__(self, tls_material: ClientTlsMaterial, client_id: str = "ca-rotation-probe") -> None:
        self.tls_material = tls_material
        self.client_id = client_id

    def verify(
        self,
        bootstrap_address: str,
        topic: str,
        message_count: int,
        per_message_delay: float,
        timeout: float,
        consume: bool = False,
    ) -> VerificationResult:
        """Produce ``message_count`` messages and require all to be acknowledged.

        Args:
            bootstrap_address: host:port of the TLS listener
            topic: Topic to produce to
            message_count: Messages that must be acknowledged
            per_message_delay: Seconds to sleep between messages
            timeout: Upper bound for the whole run in seconds
            consume: Also read the messages back from the topic

        Returns:
            VerificationResult with acknowledged and consumed counts

        Raises:
            VerificationTimeoutError: If not all messages are acknowledged
                (and consumed, when requested) within ``timeout``
        """
        progress = _Progress()
        started = time.monotonic()

        try:
            asyncio.run(
                asyncio.wait_for(
                    self._run(bootstrap_address, topic, message_count, per_message_delay, consume, progress),
                    timeout=timeout,
                )
            )
        except TimeoutError as e:
            raise VerificationTimeoutError(
                f"Only {progress.acknowledged}/{message_count} messages acknowledged "
                f"({progress.consumed} consumed) on {topic} within {timeout}s",
                acknowledged=progress.acknowledged,
            ) from e

        elapsed = time.monotonic() - started
        logger.info(
            "Probe on %s: %d acknowledged, %d consumed in %.1fs",
            topic,
            progress.acknowledged,
            progress.consumed,
            elapsed,
        )
        return VerificationResult(
            topic=topic,
            acknowledged=progress.acknowledged,
            consumed=progress.consumed,
            elapsed_seconds=elapsed,
        )

    async def _run(
        self,
        bootstrap_address: str,
        topic: str,
        message_count: int,
        per_message_delay: float,
        consume: bool,
        progress: _Progress,
    ) -> None:
        ssl_context = self.tls_material.ssl_context()
        await self._produce(bootstrap_address, ssl_context, topic, message_count, per_message_delay, progress)
        if consume:
            await self._consume(bootstrap_address, ssl_context, topic, message_count, progress)

    async def _start_producer(self, bootstrap_address: str, ssl_context: SSLContext) -> AIOKafkaProducer:
        # Retried until the outer timeout cancels; brokers may still be rolling
        while True:
            producer = AIOKafkaProducer(
                bootstrap_servers=bootstrap_address,
                security_protocol="SSL",
                ssl_context=ssl_context,
                client_id=self.client_id,
                acks="all",
            )
            try:
                await producer.start()
                return producer
            except KafkaError as e:
                logger.warning("Producer could not connect to %s: %s", bootstrap_address, e)
                await producer.stop()
                await asyncio.sleep(RETRY_BACKOFF_SECONDS)

    async def _produce(
        self,
        bootstrap_address: str,
        ssl_context: SSLContext,
        topic: str,
        message_count: int,
        per_message_delay: float,
        progress: _Progress,
    ) -> None:
        producer = await self._start_producer(bootstrap_address, ssl_context)
        try:
            while progress.acknowledged < message_count:
                value = f"Hello-world - {progress.acknowledged}".encode()
                try:
                    await producer.send_and_wait(topic, value)
                except KafkaError as e:
                    logger.warning("Message %d not acknowledged: %s", progress.acknowledged, e)
                    await asyncio.sleep(RETRY_BACKOFF_SECONDS)
                    continue
                progress.acknowledged += 1
                if per_message_delay:
                    await asyncio.sleep(per_message_delay)
        finally:
            await producer.stop()

    async def _consume(
        self,
        bootstrap_address: str,
        ssl_context: SSLContext,
        topic: str,
        message_count: int,
        progress: _Progress,
    ) -> None:
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=bootstrap_address,
            security_protocol="SSL",
            ssl_context=ssl_context,
            client_id=self.client_id,
            group_id=f"{self.client_id}-{topic}",
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        await consumer.start()
        try:
            async for _message in consumer:
                progress.consumed += 1
                if progress.consumed >= message_count:
                    break
        finally:
            await consumer.stop()
