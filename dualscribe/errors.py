"""Exceptions raised across dualscribe components."""


class DualscribeError(Exception):
    pass


class AcquisitionError(DualscribeError):
    def __init__(self, source_id, reason):
        super(AcquisitionError, self).__init__(
            'Unable to acquire audio source %s: %s' % (source_id, reason)
        )
        self.source_id = source_id
        self.reason = reason


class UnsupportedFormatError(DualscribeError):
    def __init__(self, sample_format):
        super(UnsupportedFormatError, self).__init__(
            'Unsupported sample format: %r' % (sample_format,)
        )
        self.sample_format = sample_format


class AuthenticationError(DualscribeError):
    def __init__(self, msg):
        super(AuthenticationError, self).__init__(
            'Recognizer rejected credentials. Got: %s' % msg
        )


class ConnectivityError(DualscribeError):
    def __init__(self, msg):
        super(ConnectivityError, self).__init__(
            'Recognizer connection failure. Got: %s' % msg
        )


class AlreadyOpenError(DualscribeError):
    def __init__(self, stream_id):
        super(AlreadyOpenError, self).__init__(
            'Recognition session for %s opened when it is already open'
            % stream_id
        )
        self.stream_id = stream_id


class RecordingStartError(DualscribeError):
    """Raised when a recording could not be started.

    :param causes: Mapping of stream id to the exception which prevented
        that stream from starting.
    :type causes: dict
    """
    def __init__(self, causes):
        detail = '; '.join('%s: %s' % (stream_id, exc)
                           for stream_id, exc in causes.items())
        super(RecordingStartError, self).__init__(
            'Recording start failed (%s)' % detail
        )
        self.causes = causes


class PersistenceError(DualscribeError):
    def __init__(self, path, reason):
        super(PersistenceError, self).__init__(
            'Unable to persist session to %s: %s' % (path, reason)
        )
        self.path = path
        self.reason = reason
