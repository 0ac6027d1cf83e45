class ReferralEngineException(Exception):

    def __init__(self, message='Referral engine error.', *args):
        super().__init__(message, *args)
        self.message = message


class InvalidConfigurationException(ReferralEngineException):

    def __init__(self, message='Invalid configuration.', *args):
        super().__init__(message, *args)


class InvalidReferralException(ReferralEngineException):

    def __init__(self, message='Invalid referral.', *args):
        super().__init__(message, *args)


class EmailNotSentException(ReferralEngineException):

    def __init__(self, message='Email not sent.', *args):
        super().__init__(message, *args)
