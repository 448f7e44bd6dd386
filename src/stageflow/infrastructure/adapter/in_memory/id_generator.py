import uuid

from stageflow.application.port import IDGenerator


class UUIDGenerator(IDGenerator):
    def generate(self) -> str:
        """
        Generate a random UUID4 identifier.

        :returns: 32 lowercase hex characters
        :rtype: str
        """
        return uuid.uuid4().hex
