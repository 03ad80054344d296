import os
import ssl
import uuid
import datetime
import tempfile

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from asyserve import logger
from asyserve.config import TLSSettings


class CertManager:
	def __init__(self, cache_dir = None, hostname = 'localhost'):
		self.cache_dir = cache_dir
		self.hostname = hostname
		if self.cache_dir is None:
			self.cache_dir = os.path.join(tempfile.gettempdir(), 'asyserve-certstore')

	@property
	def certfile(self):
		return os.path.join(self.cache_dir, '%s_cert.pem' % self.hostname)

	@property
	def keyfile(self):
		return os.path.join(self.cache_dir, '%s_key.pem' % self.hostname)

	def get_selfsigned(self):
		"""Returns (certfile, keyfile), generating the pair on first use."""
		if os.path.exists(self.certfile) and os.path.exists(self.keyfile):
			logger.debug('Cache hit for %s' % self.hostname)
			return self.certfile, self.keyfile

		cert, key = CertManager.generate_selfsigned(self.hostname)
		os.makedirs(self.cache_dir, mode=0o700, exist_ok=True)
		with open(self.certfile, 'wb') as f:
			f.write(cert)
		fd = os.open(self.keyfile, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
		with os.fdopen(fd, 'wb') as f:
			f.write(key)
		logger.info('Generated self-signed certificate for %s in %s' % (self.hostname, self.cache_dir))
		return self.certfile, self.keyfile

	@staticmethod
	def generate_selfsigned(hostname = 'localhost', key_exp = 65537, key_size = 2048, valid_days = 365):
		logger.debug('Generating self-signed certificate for %s' % hostname)
		one_day = datetime.timedelta(1, 0, 0)
		now = datetime.datetime.now(datetime.timezone.utc)
		private_key = rsa.generate_private_key(
			public_exponent=key_exp,
			key_size=key_size,
		)
		name = x509.Name([
			x509.NameAttribute(NameOID.COMMON_NAME, hostname),
			x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'asyserve'),
		])
		builder = x509.CertificateBuilder()
		builder = builder.subject_name(name)
		builder = builder.issuer_name(name)
		builder = builder.not_valid_before(now - one_day)
		builder = builder.not_valid_after(now + datetime.timedelta(valid_days, 0, 0))
		builder = builder.serial_number(int(uuid.uuid4()))
		builder = builder.public_key(private_key.public_key())
		builder = builder.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False,
		)
		builder = builder.add_extension(
			x509.BasicConstraints(ca=False, path_length=None), critical=True,
		)
		certificate = builder.sign(private_key=private_key, algorithm=hashes.SHA256())

		cert_pem = certificate.public_bytes(encoding=serialization.Encoding.PEM)
		key_pem = private_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.TraditionalOpenSSL,
			encryption_algorithm=serialization.NoEncryption()
		)
		return cert_pem, key_pem


def get_server_ssl_context(tls:TLSSettings, cache_dir = None):
	"""Builds the server side SSL context, None when TLS is off."""
	if tls is None or not tls.enabled:
		return None
	certfile, keyfile = tls.certfile, tls.keyfile
	if tls.selfsigned is True:
		certfile, keyfile = CertManager(cache_dir=cache_dir).get_selfsigned()
	ssl_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
	ssl_ctx.load_cert_chain(certfile=certfile, keyfile=keyfile)
	return ssl_ctx
