# tests/unit/protocols/test_services.py
"""Tests for service records and status helpers.

Test Coverage:
- Status severity classification
- check_status raising ServiceFault
- NodeId coercion
- Endpoint and UserIdentity records
"""

import pytest
from asyncua import ua

from uasession.errors import ServiceFault
from uasession.protocols.engine import (
    Endpoint,
    MessageSecurityMode,
    SessionHandle,
    UserIdentity,
    UserTokenType,
)
from uasession.protocols.services import (
    GOOD,
    check_status,
    is_bad,
    is_good,
    is_uncertain,
    to_node_id,
)


class TestStatusHelpers:
    """Test status code classification."""

    def test_good(self):
        """Test Good is neither bad nor uncertain.

        WHY: Every result check starts here.
        """
        assert is_good(GOOD)
        assert not is_bad(GOOD)
        assert not is_uncertain(GOOD)

    def test_bad(self):
        """Test Bad codes.

        WHY: Bad results become ServiceFaults.
        """
        code = ua.StatusCodes.BadNodeIdUnknown
        assert is_bad(code)
        assert not is_good(code)

    def test_uncertain_is_not_bad(self):
        """Test Uncertain values pass through.

        WHY: Uncertain data is still usable and must not raise.
        """
        code = ua.StatusCodes.UncertainLastUsableValue
        assert is_uncertain(code)
        assert not is_bad(code)
        check_status(code)

    def test_check_status_raises(self):
        """Test check_status on a bad code.

        WHY: Single-element operations surface the fault directly.
        """
        with pytest.raises(ServiceFault) as exc_info:
            check_status(ua.StatusCodes.BadUserAccessDenied, "Writing")

        assert exc_info.value.status_code == ua.StatusCodes.BadUserAccessDenied


class TestToNodeId:
    """Test to_node_id coercion."""

    def test_string_form(self):
        """Test string node ids are parsed.

        WHY: Applications mostly pass node ids as text.
        """
        node_id = to_node_id("ns=2;s=Pump.Speed")

        assert node_id.NamespaceIndex == 2
        assert node_id.Identifier == "Pump.Speed"

    def test_node_id_passthrough(self):
        """Test NodeIds are returned unchanged.

        WHY: No needless copies on hot paths.
        """
        node_id = ua.NodeId(85)
        assert to_node_id(node_id) is node_id

    def test_rejects_other_types(self):
        """Test unsupported identifier types.

        WHY: An int could be a numeric id in any namespace; be explicit.
        """
        with pytest.raises(TypeError):
            to_node_id(85)


class TestEngineRecords:
    """Test Endpoint, UserIdentity and SessionHandle."""

    def test_endpoint_secured(self):
        """Test secured property.

        WHY: connect_url() picks endpoints by security.
        """
        assert not Endpoint("opc.tcp://x/").secured
        assert Endpoint("opc.tcp://x/", "Basic256Sha256", MessageSecurityMode.SIGN).secured

    def test_identity_repr_hides_password(self):
        """Test passwords never appear in repr.

        WHY: Identities are logged on connect.
        """
        identity = UserIdentity.user("operator", "secret")

        assert identity.token_type == UserTokenType.USERNAME
        assert "secret" not in repr(identity)
        assert identity.display_name == "operator"

    def test_namespace_index(self):
        """Test namespace lookup on a handle.

        WHY: Expanded node ids are mapped through the session's table.
        """
        handle = SessionHandle("s", namespace_uris=["http://opcfoundation.org/UA/", "urn:plc"])

        assert handle.namespace_index("urn:plc") == 1
        assert handle.namespace_index("urn:other") is None
