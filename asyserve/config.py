import os
import enum
import string
from typing import NamedTuple, Optional, Tuple, Union


class HashAlgorithm(enum.Enum):
	SHA256 = 'sha256'
	SHA512 = 'sha512'

# hex digest length per algorithm
HASH_HEX_LENGTHS = {
	HashAlgorithm.SHA256 : 64,
	HashAlgorithm.SHA512 : 128,
}

class PlainAuth(NamedTuple):
	username: str
	password: str

class HashedAuth(NamedTuple):
	username: str
	algorithm: HashAlgorithm
	digest: str

AuthSpec = Union[None, PlainAuth, HashedAuth]


def parse_auth_spec(auth_str:str) -> Union[PlainAuth, HashedAuth]:
	"""
	Parses an auth spec string into an AuthSpec.

	Accepted forms:
		user:password
		user:sha256:<hex digest>
		user:sha512:<hex digest>

	Raises ValueError on malformed input.
	"""
	if auth_str is None or ':' not in auth_str:
		raise ValueError('Auth spec must be in the form "user:password" or "user:<sha256|sha512>:<hex>"')

	username, rest = auth_str.split(':', 1)
	if not username:
		raise ValueError('Auth spec username must not be empty')

	if ':' in rest:
		algo_name, digest = rest.split(':', 1)
		try:
			algorithm = HashAlgorithm(algo_name.lower())
		except ValueError:
			algorithm = None

		if algorithm is not None:
			digest = digest.lower()
			if len(digest) != HASH_HEX_LENGTHS[algorithm] or any(c not in string.hexdigits for c in digest):
				raise ValueError('Invalid %s digest in auth spec' % algorithm.value)
			return HashedAuth(username, algorithm, digest)

	# anything that is not a known hash algorithm is part of the password
	if not rest:
		raise ValueError('Auth spec password must not be empty')
	return PlainAuth(username, rest)


class TLSSettings(NamedTuple):
	certfile: Optional[str] = None
	keyfile: Optional[str] = None
	selfsigned: bool = False

	@property
	def enabled(self):
		return self.selfsigned is True or self.certfile is not None


class ServeConfig(NamedTuple):
	"""Read-only settings shared by every request handler."""
	root: str
	auth: AuthSpec = None
	uploads_enabled: bool = False
	overwrite_files: bool = False
	no_symlinks: bool = False
	realm: str = 'asyserve'
	port: int = 8080
	interfaces: Tuple[str, ...] = ('0.0.0.0',)
	tls: TLSSettings = TLSSettings()

	@staticmethod
	def create(root:str, **kwargs) -> 'ServeConfig':
		"""Canonicalizes the serve root and validates it before building the config."""
		root = os.path.realpath(os.path.abspath(root))
		if not os.path.exists(root):
			raise ValueError('Directory does not exist: %s' % root)
		if not os.path.isdir(root):
			raise ValueError('Path is not a directory: %s' % root)
		if 'interfaces' in kwargs:
			if not kwargs['interfaces']:
				del kwargs['interfaces']
			else:
				kwargs['interfaces'] = tuple(kwargs['interfaces'])
		return ServeConfig(root, **kwargs)
