import base64
import binascii
from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes

from asyserve.config import HashAlgorithm, PlainAuth, HashedAuth


_HASH_CLASSES = {
	HashAlgorithm.SHA256 : hashes.SHA256,
	HashAlgorithm.SHA512 : hashes.SHA512,
}

def constant_time_eq(a:bytes, b:bytes) -> bool:
	"""
	Compares two byte strings without exiting early on the first mismatch.
	Only the length of the inputs influences the running time.
	"""
	if len(a) != len(b):
		# still walk the provided input so the loop length is independent of the secret
		b = a
		result = 1
	else:
		result = 0
	for x, y in zip(a, b):
		result |= x ^ y
	return result == 0

def compute_digest(algorithm:HashAlgorithm, password:bytes) -> str:
	h = hashes.Hash(_HASH_CLASSES[algorithm]())
	h.update(password)
	return h.finalize().hex()

def verify(spec, username:str, password:str) -> bool:
	"""
	Checks a username/password pair against a configured auth spec.
	Never raises for client supplied input, returns False instead.
	"""
	if username is None or password is None:
		return False
	try:
		username_b = username.encode('utf-8', 'surrogateescape')
		password_b = password.encode('utf-8', 'surrogateescape')
	except UnicodeError:
		return False

	if isinstance(spec, PlainAuth):
		user_ok = constant_time_eq(username_b, spec.username.encode('utf-8'))
		pass_ok = constant_time_eq(password_b, spec.password.encode('utf-8'))
		return user_ok & pass_ok

	if isinstance(spec, HashedAuth):
		user_ok = constant_time_eq(username_b, spec.username.encode('utf-8'))
		digest = compute_digest(spec.algorithm, password_b)
		pass_ok = constant_time_eq(digest.encode('ascii'), spec.digest.lower().encode('ascii'))
		return user_ok & pass_ok

	return False

def parse_basic_authorization(header_value) -> Optional[Tuple[str, str]]:
	"""
	Decodes the value of an 'Authorization: Basic ...' header.
	Returns (username, password) or None if the header is missing or malformed.
	"""
	if header_value is None:
		return None
	if isinstance(header_value, bytes):
		try:
			header_value = header_value.decode('latin-1')
		except UnicodeDecodeError:
			return None

	parts = header_value.strip().split(None, 1)
	if len(parts) != 2 or parts[0].lower() != 'basic':
		return None

	try:
		decoded = base64.b64decode(parts[1].strip(), validate=True)
	except (binascii.Error, ValueError):
		return None

	try:
		decoded = decoded.decode('utf-8')
	except UnicodeDecodeError:
		decoded = decoded.decode('latin-1')

	if ':' not in decoded:
		return None
	username, password = decoded.split(':', 1)
	return username, password
