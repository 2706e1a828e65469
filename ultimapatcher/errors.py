class UltimaPatcherError(Exception):
    pass


class MalformedExecutable(UltimaPatcherError):
    pass


class MalformedPatch(UltimaPatcherError):
    pass


class MalformedHack(UltimaPatcherError):
    pass


class PatchApplicationException(UltimaPatcherError):
    pass


class TargetLengthMismatch(UltimaPatcherError):
    def __init__(self, target_length: int, file_length: int):
        super().__init__(
            f"Target file length 0x{target_length:X} differs from executable length 0x{file_length:X}."
            " Use --ignore-exe-length to bypass this check."
        )
        self.target_length = target_length
        self.file_length = file_length
