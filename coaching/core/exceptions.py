from fastapi import HTTPException, status


class ServiceError(Exception):
    """
    Rejection raised by the catalog and billing services. Routers turn it into an
    HTTP error; the enrollment coordinator never raises it to callers and reports
    failures in its result body instead.
    """

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.message)
