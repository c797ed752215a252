"""
Microsoft Graph API client for fetching policies and directory objects
"""

# Standard library imports
import time
import urllib3
from dataclasses import dataclass
from typing import List, Dict, Optional, Any, Tuple, Callable

# Third-party imports
import requests

# Local imports
from ..errors import FatalConfigurationError


LOOKUP_OK = 'ok'
LOOKUP_NOT_FOUND = 'not_found'
LOOKUP_FAILED = 'failed'


@dataclass(frozen=True)
class LookupResult:
    """Outcome of a directory call: a value, a NotFound, or a transient failure."""
    status: str
    value: Any = None
    error: str = ''

    @property
    def ok(self) -> bool:
        return self.status == LOOKUP_OK

    @property
    def not_found(self) -> bool:
        return self.status == LOOKUP_NOT_FOUND

    @property
    def failed(self) -> bool:
        return self.status == LOOKUP_FAILED

    @classmethod
    def success(cls, value: Any) -> 'LookupResult':
        return cls(LOOKUP_OK, value)

    @classmethod
    def missing(cls, error: str = '') -> 'LookupResult':
        return cls(LOOKUP_NOT_FOUND, None, error)

    @classmethod
    def failure(cls, error: str) -> 'LookupResult':
        return cls(LOOKUP_FAILED, None, error)


class GraphAPIClient:
    """Client for Microsoft Graph API operations"""

    def __init__(self, token: str, proxy: str = None, max_attempts: int = 3, retry_delay: float = 1.0):
        """Initialize the Graph API client with an access token.

        Parameters:
            token (str): Microsoft Graph API access token with appropriate permissions
            proxy (str): Proxy address in format 'host:port' (e.g., '127.0.0.1:8080').
                        If provided, routes all requests through proxy without cert verification.
            max_attempts (int): Attempts per request before giving up (default: 3)
            retry_delay (float): Delay in seconds between attempts (default: 1.0)
        """
        self.token = token
        self.msgraph_domain = "graph.microsoft.com"
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        # Proxy configuration for debugging (e.g., Burp Suite)
        if proxy:
            self.proxies = {
                'http': f'http://{proxy}',
                'https': f'http://{proxy}'
            }
            self.verify_ssl = False
            # Suppress SSL warnings when using proxy
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        else:
            self.proxies = None
            self.verify_ssl = True

        # HTTP Session for connection pooling (reuse TCP connections)
        self.session = requests.Session()
        self.session.proxies = self.proxies
        self.session.verify = self.verify_ssl
        self.session.headers.update({
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        })

    @staticmethod
    def _retry_on_failure(func: Callable, max_attempts: int = 3, delay: float = 1.0, skip_on_404: bool = True):
        """Execute a function with retry logic.

        Wraps a function call with retry logic that:
        - Retries up to max_attempts times
        - Skips retries on 404 errors (if skip_on_404 is True)
        - Adds delay between retry attempts
        - Re-raises the last exception if all retries fail

        Parameters:
            func (Callable): The function to execute (should return requests.Response)
            max_attempts (int): Maximum number of attempts (default: 3)
            delay (float): Delay in seconds between retries (default: 1.0)
            skip_on_404 (bool): If True, don't retry on 404 errors (default: True)

        Returns:
            requests.Response: The successful response

        Raises:
            requests.exceptions.RequestException: The last exception encountered if all retries fail
        """
        last_exception = None

        for attempt in range(max_attempts):
            try:
                response = func()
                response.raise_for_status()
                return response
            except requests.exceptions.HTTPError as e:
                last_exception = e
                status = e.response.status_code if e.response is not None else None
                if skip_on_404 and status == 404:
                    # Resource doesn't exist, no point retrying
                    raise
                elif status in (401, 403):
                    # Credentials won't get better by retrying
                    raise
                elif attempt < max_attempts - 1:
                    print(f"    HTTP error (attempt {attempt + 1}/{max_attempts}): {status}, retrying in {delay}s...")
                    time.sleep(delay)
                    continue
                else:
                    raise
            except requests.exceptions.Timeout as e:
                last_exception = e
                if attempt < max_attempts - 1:
                    print(f"    Request timed out (attempt {attempt + 1}/{max_attempts}), retrying in {delay}s...")
                    time.sleep(delay)
                    continue
                else:
                    raise
            except requests.exceptions.RequestException as e:
                last_exception = e
                if attempt < max_attempts - 1:
                    print(f"    Request failed (attempt {attempt + 1}/{max_attempts}): {type(e).__name__}, retrying in {delay}s...")
                    time.sleep(delay)
                    continue
                else:
                    raise

        if last_exception:
            raise last_exception

    def _get(self, url: str, headers: Dict[str, str] = None, timeout: int = 10) -> requests.Response:
        return self._retry_on_failure(
            lambda: self.session.get(url, headers=headers, timeout=timeout),
            max_attempts=self.max_attempts,
            delay=self.retry_delay
        )

    def _lookup(self, url: str, headers: Dict[str, str] = None) -> LookupResult:
        """Fetch a single object, mapping HTTP outcomes to a LookupResult.

        Parameters:
            url (str): Absolute Graph URL of the object
            headers (Dict[str, str]): Extra request headers (optional)

        Returns:
            LookupResult: ok with the JSON body, not_found on 404, failed otherwise
        """
        try:
            response = self._get(url, headers=headers)
            return LookupResult.success(response.json())
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return LookupResult.missing(f"{url} not found")
            return LookupResult.failure(str(e))
        except (requests.exceptions.RequestException, ValueError) as e:
            return LookupResult.failure(str(e))

    def _list_all(self, url: str, headers: Dict[str, str] = None, timeout: int = 30) -> LookupResult:
        """Fetch every page of a collection, following '@odata.nextLink'.

        Parameters:
            url (str): Absolute Graph URL of the collection
            headers (Dict[str, str]): Extra request headers (optional)
            timeout (int): Per-page timeout in seconds

        Returns:
            LookupResult: ok with the concatenated 'value' items, not_found on 404,
                          failed if any page fails (partial pages are discarded)
        """
        items = []

        while url:
            try:
                response = self._get(url, headers=headers, timeout=timeout)
                data = response.json()
            except requests.exceptions.HTTPError as e:
                if e.response is not None and e.response.status_code == 404:
                    return LookupResult.missing(f"{url} not found")
                return LookupResult.failure(str(e))
            except (requests.exceptions.RequestException, ValueError) as e:
                return LookupResult.failure(str(e))

            items.extend(data.get('value', []))
            url = data.get('@odata.nextLink')

        return LookupResult.success(items)

    def validate_token(self) -> Tuple[bool, str]:
        """Validate the access token by making a test API call.

        Tests the token against the /organization endpoint, which works for both
        delegated and application tokens. Provides detailed error messages for
        common token issues including invalid tokens, missing permissions, and
        network problems.

        Returns:
            tuple[bool, str]: A tuple containing:
                - bool: True if token is valid and has permissions, False otherwise
                - str: Error message if validation failed, empty string if successful
        """
        url = f"https://{self.msgraph_domain}/v1.0/organization?$select=id"

        try:
            response = self.session.get(url, timeout=10)

            if response.status_code == 401:
                return False, "Invalid or expired access token. Please provide a valid Microsoft Graph access token."
            elif response.status_code == 403:
                return False, "Access token is valid but lacks required permissions. Ensure the token has Policy.Read.All and Directory.Read.All permissions."
            elif response.status_code >= 400:
                return False, f"Token validation failed with status {response.status_code}: {response.text}"

            return True, ""
        except requests.exceptions.Timeout:
            return False, "Token validation timed out. Check your network connection."
        except requests.exceptions.RequestException as e:
            return False, f"Token validation failed: {str(e)}"

    def get_all_policies(self) -> List[Dict]:
        """Fetch all conditional access policies from Microsoft Graph API.

        Retrieves all conditional access policies (enabled, report-only and disabled)
        without any filtering.

        Returns:
            List[Dict]: List of all conditional access policy objects

        Raises:
            FatalConfigurationError: If the token is invalid, lacks permissions, or
                                     the service can't be reached
        """
        url = f"https://{self.msgraph_domain}/beta/identity/conditionalAccess/policies"

        try:
            response = self._retry_on_failure(
                lambda: self.session.get(url, timeout=10),
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                skip_on_404=False  # Policy endpoint should exist
            )
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 401:
                raise FatalConfigurationError("Invalid or expired access token. Please provide a valid Microsoft Graph access token.")
            elif status == 403:
                raise FatalConfigurationError("Access denied. The token lacks required permissions (Policy.Read.All).")
            raise FatalConfigurationError(f"Failed to fetch policies: {e}")
        except requests.exceptions.Timeout:
            raise FatalConfigurationError(f"Request timed out while fetching policies after {self.max_attempts} attempts. Check your network connection.")
        except requests.exceptions.RequestException as e:
            raise FatalConfigurationError(f"Directory service unreachable: {e}")

        data = response.json()
        policies = data.get('value', [])

        # The policy list is paged on large tenants
        next_link = data.get('@odata.nextLink')
        if next_link:
            remaining = self._list_all(next_link)
            if remaining.ok:
                policies.extend(remaining.value)
            else:
                raise FatalConfigurationError(f"Failed to fetch all policy pages: {remaining.error}")

        return policies

    def get_user(self, user_id: str) -> LookupResult:
        """Get a user by object ID."""
        url = f"https://{self.msgraph_domain}/v1.0/users/{user_id}?$select=id,displayName,userPrincipalName,mail,userType,accountEnabled"
        return self._lookup(url)

    def get_group(self, group_id: str) -> LookupResult:
        """Get a group by object ID."""
        url = f"https://{self.msgraph_domain}/v1.0/groups/{group_id}?$select=id,displayName,mail,securityEnabled,groupTypes,membershipRule,isAssignableToRole"
        return self._lookup(url)

    def get_group_members(self, group_id: str) -> LookupResult:
        """Get the direct members of a group.

        Retrieves all direct members of a specified group, handling pagination automatically
        to ensure all members are returned even for large groups. Nested groups are
        returned as members and are not expanded here.

        Parameters:
            group_id (str): The object ID of the group

        Returns:
            LookupResult: ok with a list of member objects (users, groups, service principals, etc.)
        """
        url = f"https://{self.msgraph_domain}/v1.0/groups/{group_id}/members?$top=999"
        return self._list_all(url)

    def get_service_principal(self, sp_id: str) -> LookupResult:
        """Get a service principal by its object ID."""
        url = f"https://{self.msgraph_domain}/v1.0/servicePrincipals/{sp_id}"
        return self._lookup(url)

    def find_service_principal_by_app_id(self, app_id: str) -> LookupResult:
        """Resolve a service principal by its application ID.

        Policies reference applications by appId (not object ID), so lookups by
        object ID fall back to this filter query.

        Parameters:
            app_id (str): The application ID (appId, not object ID) to search for

        Returns:
            LookupResult: ok with the service principal object, not_found if no
                          service principal carries that appId
        """
        url = f"https://{self.msgraph_domain}/v1.0/servicePrincipals?$filter=appId eq '{app_id}'"
        result = self._list_all(url, headers={"ConsistencyLevel": "eventual"}, timeout=10)
        if not result.ok:
            return result
        if not result.value:
            return LookupResult.missing(f"No service principal with appId {app_id}")
        return LookupResult.success(result.value[0])

    def list_named_locations(self) -> LookupResult:
        """Fetch all named locations (IP ranges, countries) configured in the tenant."""
        url = f"https://{self.msgraph_domain}/v1.0/identity/conditionalAccess/namedLocations"
        return self._list_all(url)

    def list_activated_roles(self) -> LookupResult:
        """Fetch directory roles activated in the tenant.

        A role template must be activated before its members can be queried.

        Returns:
            LookupResult: ok with a list of {id, displayName, roleTemplateId} objects
        """
        url = f"https://{self.msgraph_domain}/v1.0/directoryRoles?$select=id,displayName,roleTemplateId,description"
        return self._list_all(url)

    def list_role_templates(self) -> LookupResult:
        """Fetch every directory role template (activated or not)."""
        url = f"https://{self.msgraph_domain}/v1.0/directoryRoleTemplates"
        return self._list_all(url)

    def get_role_members(self, role_id: str) -> LookupResult:
        """Get all members assigned to an activated directory role.

        Parameters:
            role_id (str): The object ID of the activated directory role (not the template ID)

        Returns:
            LookupResult: ok with a list of member objects assigned to the role
        """
        url = f"https://{self.msgraph_domain}/v1.0/directoryRoles/{role_id}/members"
        return self._list_all(url, timeout=10)

    def get_authentication_contexts(self) -> LookupResult:
        """Fetch authentication context class references configured in the tenant."""
        url = f"https://{self.msgraph_domain}/v1.0/identity/conditionalAccess/authenticationContextClassReferences"
        return self._list_all(url, timeout=10)

    def get_organization(self) -> LookupResult:
        """Fetch the tenant's organization object (id, display name, verified domains)."""
        url = f"https://{self.msgraph_domain}/v1.0/organization"
        result = self._list_all(url, timeout=10)
        if not result.ok:
            return result
        if not result.value:
            return LookupResult.missing("No organization object returned")
        return LookupResult.success(result.value[0])
