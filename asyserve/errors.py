
class ServeError(Exception):
	"""Base class of every error that ends up as an HTTP error response."""
	status_code = 500
	reason = 'Internal Server Error'

	def __init__(self, message = None):
		self.message = message if message is not None else self.reason
		super().__init__(self.message)

class NotFound(ServeError):
	status_code = 404
	reason = 'Not Found'

class Unauthorized(ServeError):
	status_code = 401
	reason = 'Unauthorized'

class MethodNotAllowed(ServeError):
	status_code = 405
	reason = 'Method Not Allowed'

class UploadDisabled(ServeError):
	# the upload endpoint does not exist when uploads are off
	status_code = 404
	reason = 'Not Found'

class UploadConflict(ServeError):
	status_code = 409
	reason = 'Conflict'

class UploadIOFailure(ServeError):
	status_code = 500
	reason = 'Internal Server Error'

class MalformedMultipart(ServeError):
	status_code = 400
	reason = 'Bad Request'
