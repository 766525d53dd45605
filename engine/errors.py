"""Typed failures raised by the services and mapped to HTTP codes in app.py."""


class EngineError(Exception):
    status_code = 400


class NotFoundError(EngineError):
    status_code = 404


class ForbiddenError(EngineError):
    status_code = 403


class InvalidStateError(EngineError):
    status_code = 409


class NoParticipantsError(InvalidStateError):
    pass


class GenerationFailure(EngineError):
    """The narrative generator was unreachable or returned unusable output."""

    status_code = 502


class RewardApplicationError(EngineError):
    status_code = 500

    def __init__(self, character_id: int, message: str):
        super().__init__(f"Reward for character {character_id} failed: {message}")
        self.character_id = character_id
