import os
import enum
import stat
import urllib.parse

from asyserve import logger


class PathKind(enum.Enum):
	DIRECTORY = 1
	FILE = 2
	NOT_FOUND = 3

class ResolvedPath:
	"""Outcome of mapping a URL path onto the serve root. Created per request."""
	def __init__(self, kind:PathKind, path:str = None, url_path:str = None):
		self.kind = kind
		self.path = path
		self.url_path = url_path

	@property
	def is_dir(self):
		return self.kind == PathKind.DIRECTORY

	@property
	def is_file(self):
		return self.kind == PathKind.FILE

	@property
	def found(self):
		return self.kind != PathKind.NOT_FOUND

	@staticmethod
	def not_found():
		return ResolvedPath(PathKind.NOT_FOUND)

	def __repr__(self):
		return 'ResolvedPath(%s, %r, %r)' % (self.kind.name, self.path, self.url_path)


def normalize_url_path(url_path:str):
	"""
	Percent-decodes the URL path and collapses '.', '..' and empty segments.
	Returns the list of decoded segments, or None if the path can never be valid.
	'..' above the root stays at the root.
	"""
	if url_path is None:
		return []
	raw = urllib.parse.unquote_to_bytes(url_path)
	if b'\x00' in raw:
		return None

	segments = []
	for segment in raw.split(b'/'):
		if segment in (b'', b'.'):
			continue
		if segment == b'..':
			if segments:
				segments.pop()
			continue
		segments.append(os.fsdecode(segment))
	return segments

def segments_to_url(segments, is_dir:bool) -> str:
	url = '/' + '/'.join(urllib.parse.quote(os.fsencode(s)) for s in segments)
	if is_dir is True and not url.endswith('/'):
		url += '/'
	return url


class PathResolver:
	def __init__(self, root:str, no_symlinks:bool = False):
		self.root = os.path.realpath(root)
		self.no_symlinks = no_symlinks

	def _is_within_root(self, path:str) -> bool:
		try:
			return os.path.commonpath([path, self.root]) == self.root
		except ValueError:
			return False

	def _has_symlink(self, segments) -> bool:
		current = self.root
		for segment in segments:
			current = os.path.join(current, segment)
			if os.path.islink(current):
				return True
		return False

	def resolve(self, url_path:str) -> ResolvedPath:
		segments = normalize_url_path(url_path)
		if segments is None:
			return ResolvedPath.not_found()

		# segments never contain separators or '..' at this point
		joined = os.path.join(self.root, *segments) if segments else self.root
		try:
			if self.no_symlinks is True and self._has_symlink(segments):
				logger.debug('Symlink in path refused: %s' % joined)
				return ResolvedPath.not_found()

			canonical = os.path.realpath(joined)
			if not self._is_within_root(canonical):
				logger.debug('Path escapes the serve root: %s -> %s' % (joined, canonical))
				return ResolvedPath.not_found()

			st = os.stat(canonical)
		except (OSError, ValueError) as e:
			logger.debug('Resolving %r failed: %s' % (url_path, e))
			return ResolvedPath.not_found()

		if stat.S_ISDIR(st.st_mode):
			return ResolvedPath(PathKind.DIRECTORY, canonical, segments_to_url(segments, True))
		if stat.S_ISREG(st.st_mode):
			return ResolvedPath(PathKind.FILE, canonical, segments_to_url(segments, False))
		return ResolvedPath.not_found()
