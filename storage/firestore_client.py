#Purpose: The Firestore "adapter/client".
#Sole responsibility: talk to the Firestore REST API via HTTP and return normalized outputs.
#Encapsulates Firestore-specific details:
#document names (projects/<p>/databases/<db>/documents/<collection>/<id>)
#URL construction (documents, :runQuery, :commit)
#preconditions (currentDocument.updateTime / currentDocument.exists)
#timeouts and error mapping into the store error taxonomy
#It should not contain routing rules or order mapping.


from dotenv import load_dotenv
import os
from typing import Any, Dict, List, Optional
import requests

from orders.store import StoreUnavailableError

# Read Firestore settings from environment
# Example in .env:
# FIRESTORE_BASE_URL=http://localhost:8080   (emulator) or https://firestore.googleapis.com
# FIRESTORE_PROJECT_ID=pharmaconnect-dj
load_dotenv()
BASE_URL = os.getenv("FIRESTORE_BASE_URL", "https://firestore.googleapis.com")
PROJECT_ID = os.getenv("FIRESTORE_PROJECT_ID")
DATABASE = os.getenv("FIRESTORE_DATABASE", "(default)")
TOKEN = os.getenv("FIRESTORE_TOKEN")


class FirestoreError(StoreUnavailableError):
    """Raised on transport failures and non-OK Firestore answers."""

    def __init__(self, message: str, status_code: Optional[int] = None, status: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.status = status


class FirestoreNotFound(FirestoreError):
    pass


class FirestoreAlreadyExists(FirestoreError):
    pass


class FirestorePreconditionFailed(FirestoreError):
    """The document changed (or vanished) since the revision we conditioned on."""
    pass


_STATUS_ERRORS = {
    "NOT_FOUND": FirestoreNotFound,
    "ALREADY_EXISTS": FirestoreAlreadyExists,
    "FAILED_PRECONDITION": FirestorePreconditionFailed,
    "ABORTED": FirestorePreconditionFailed,
}


class FirestoreClient:
    """
    Firestore REST Adapter / Client

    Sole responsibility:
    - Talk to Firestore via HTTP
    - Map HTTP failures onto FirestoreError subclasses
    - Return raw documents ({"name", "fields", "updateTime"}) for the store layer to decode
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        base_url: Optional[str] = None,
        database: Optional[str] = None,
        token: Optional[str] = None,
        timeout: int = 5,
        session: Optional[requests.Session] = None,
    ):
        self.project_id = project_id or PROJECT_ID
        self.base_url = (base_url or BASE_URL or "").rstrip("/")
        self.database = database or DATABASE
        self.token = token or TOKEN
        self.timeout = timeout  # seconds to wait for Firestore before giving up
        self.session = session or requests.Session()

        if not self.project_id:
            raise ValueError("Firestore project id not set. Please set FIRESTORE_PROJECT_ID in the .env file.")
        if not self.base_url:
            raise ValueError("Firestore base URL not set. Please set FIRESTORE_BASE_URL in the .env file.")

    #----------------
    # Internal helpers for names, URLs and error handling
    #----------------
    @property
    def documents_path(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}/documents"

    def document_name(self, collection: str, document_id: str) -> str:
        return f"{self.documents_path}/{collection}/{document_id}"

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v1/{path}"

    def _request(self, method: str, url: str, *, params=None, body=None) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FirestoreError(f"Firestore unreachable: {exc}") from exc

        if 200 <= response.status_code < 300:
            return response.json() if response.content else {}

        status, message = None, response.text
        try:
            error = response.json().get("error", {})
            status = error.get("status")
            message = error.get("message", message)
        except ValueError:
            pass

        error_class = _STATUS_ERRORS.get(status, FirestoreError)
        if status is None and response.status_code == 404:
            error_class = FirestoreNotFound
        raise error_class(
            f"Firestore error {response.status_code} ({status}): {message}",
            status_code=response.status_code,
            status=status,
        )

    #----------------
    # Documents
    #----------------
    def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        """
        Returns the raw document or None if it does not exist.
        """
        try:
            return self._request("GET", self._url(self.document_name(collection, document_id)))
        except FirestoreNotFound:
            return None

    def create_document(self, collection: str, document_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fails with FirestoreAlreadyExists if the id is taken.
        """
        return self._request(
            "POST",
            self._url(f"{self.documents_path}/{collection}"),
            params={"documentId": document_id},
            body={"fields": fields},
        )

    def patch_document(
        self,
        collection: str,
        document_id: str,
        fields: Dict[str, Any],
        *,
        field_paths: Optional[List[str]] = None,
        update_time: Optional[str] = None,
        must_exist: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Partial write. `field_paths` becomes the update mask (only those fields change);
        `update_time` makes the write conditional on the document's current revision.
        """
        params: Dict[str, Any] = {}
        if field_paths is not None:
            params["updateMask.fieldPaths"] = [_quote_field_path(path) for path in field_paths]
        if update_time is not None:
            params["currentDocument.updateTime"] = update_time
        elif must_exist is not None:
            params["currentDocument.exists"] = "true" if must_exist else "false"

        return self._request(
            "PATCH",
            self._url(self.document_name(collection, document_id)),
            params=params,
            body={"fields": fields},
        )

    #----------------
    # Queries and atomic transforms
    #----------------
    def run_query(self, collection: str, where: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        calls :runQuery with a structured query over one collection.
        returns the matching raw documents (result rows without a document are skipped).
        """
        structured_query: Dict[str, Any] = {"from": [{"collectionId": collection}]}
        if where:
            structured_query["where"] = where

        rows = self._request(
            "POST",
            self._url(f"{self.documents_path}:runQuery"),
            body={"structuredQuery": structured_query},
        )
        return [row["document"] for row in rows or [] if "document" in row]

    def increment(self, collection: str, document_id: str, field_path: str, amount: int = 1) -> int:
        """
        Server-side atomic increment; returns the value after the increment.
        """
        result = self._request(
            "POST",
            self._url(f"{self.documents_path}:commit"),
            body={
                "writes": [{
                    "transform": {
                        "document": self.document_name(collection, document_id),
                        "fieldTransforms": [{
                            "fieldPath": field_path,
                            "increment": {"integerValue": str(amount)},
                        }],
                    },
                }],
            },
        )
        try:
            transformed = result["writeResults"][0]["transformResults"][0]
        except (KeyError, IndexError) as exc:
            raise FirestoreError(f"Unexpected commit response for {collection}/{document_id}") from exc

        if "integerValue" in transformed:
            return int(transformed["integerValue"])
        return int(transformed.get("doubleValue", 0))


def _quote_field_path(path: str) -> str:
    # simple field names pass through; anything else must be backtick-quoted
    if path.replace("_", "a").isalnum() and not path[0].isdigit():
        return path
    return "`" + path.replace("`", "\\`") + "`"
