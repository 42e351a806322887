"""Error types raised by the voice processing pipeline"""


class VoicePipelineError(Exception):
    """Base class for pipeline errors"""


class DeviceUnavailable(VoicePipelineError):
    """Capture device could not be opened (missing, busy or permission denied)"""


class ProfileNotFound(VoicePipelineError):
    """Unknown noise or voice profile id"""

    def __init__(self, profile_id: str):
        super().__init__(f"Profile not found: {profile_id}")
        self.profile_id = profile_id


class SessionNotActive(VoicePipelineError):
    """Calibration session is unknown, completed or cancelled"""

    def __init__(self, session_id: str):
        super().__init__(f"Invalid or inactive calibration session: {session_id}")
        self.session_id = session_id


class SessionFull(VoicePipelineError):
    """Calibration session already holds its configured number of samples"""

    def __init__(self, session_id: str, total_steps: int):
        super().__init__(f"Calibration session {session_id} already has {total_steps} samples")
        self.session_id = session_id
        self.total_steps = total_steps


class InitializationFailed(VoicePipelineError):
    """No pipeline feature could be initialized"""


class PipelineNotInitialized(VoicePipelineError):
    """Pipeline used before initialize()"""


class InvalidImportData(VoicePipelineError):
    """Malformed profile or configuration import payload"""


class NoCalibrationSamples(VoicePipelineError):
    """Calibration session completed before any sample was added"""

    def __init__(self, session_id: str):
        super().__init__(f"Calibration session {session_id} has no samples to analyze")
        self.session_id = session_id
