#tests\test_cloud_adapters.py

"""Test each cloud adapter's deploy, status and lookup calls against scripted APIs."""

import json
from urllib.parse import parse_qsl

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from hft_control.core.errors import AuthError, CapacityError, ProtocolError
from hft_control.core.http import UpstreamClient
from hft_control.core.models import CloudCredential, LifecycleStatus
from hft_control.providers.alibaba import AlibabaAdapter
from hft_control.providers.aws import AWSAdapter
from hft_control.providers.azure import AzureAdapter
from hft_control.providers.base import DeploySpec
from hft_control.providers.contabo import ContaboAdapter
from hft_control.providers.gcp import GCPAdapter
from hft_control.providers.oracle import OracleAdapter
from hft_control.providers.vultr import VultrAdapter

from tests.fakes import FakeResponse, FakeSession

SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHft bot@control"


@pytest.fixture(scope="module")
def rsa_pem():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def by_action(responses, read_action):
    """Route single-endpoint RPC APIs on their Action parameter."""
    def route(method, url, kwargs):
        value = responses[read_action(kwargs)]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        return value
    return route


# -------------------------
# Error codes
# -------------------------

class TestErrorCodes:

    def test_nested_list_code(self):
        """Test a code inside a list (GCE error.errors[0].reason) is extracted."""
        session = FakeSession()
        session.add("POST", "/x", FakeResponse(409, {"error": {"errors": [{"reason": "alreadyExists"}]}}))
        client = UpstreamClient("gcp", session=session)

        with pytest.raises(ProtocolError) as exc_info:
            client.json("POST", "https://api/x", code_field="error.errors.0.reason")
        assert exc_info.value.provider_code == "alreadyExists"

    def test_capacity_code_beats_status(self):
        session = FakeSession()
        session.add("POST", "/x", FakeResponse(503, {"code": "InsufficientCapacity"}))
        client = UpstreamClient("any", session=session)

        with pytest.raises(CapacityError):
            client.json("POST", "https://api/x", code_field="code")


# -------------------------
# AWS
# -------------------------

EC2_NS = "http://ec2.amazonaws.com/doc/2016-11-15/"


def ec2(action, inner=""):
    return FakeResponse(200, text=f'<{action}Response xmlns="{EC2_NS}">{inner}</{action}Response>')


def ec2_error(status, code):
    return FakeResponse(status, text=(
        f"<Response><Errors><Error><Code>{code}</Code><Message>rejected</Message></Error></Errors>"
        "<RequestID>req-1</RequestID></Response>"
    ))


def described(state, ip=None):
    address = f"<ipAddress>{ip}</ipAddress>" if ip else ""
    return ec2("DescribeInstances", (
        "<reservationSet><item><instancesSet><item><instanceId>i-0abc</instanceId>"
        f"<instanceState><code>0</code><name>{state}</name></instanceState>{address}"
        "</item></instancesSet></item></reservationSet>"
    ))


def aws_action(kwargs):
    return dict(parse_qsl(kwargs["data"].decode()))["Action"]


def aws_params(call):
    return dict(parse_qsl(call[2]["data"].decode()))


class TestAWSAdapter:

    @pytest.fixture
    def creds(self):
        return CloudCredential("aws", {"access_key_id": "AKIDEXAMPLE", "secret_access_key": "secret"})

    def test_deploy_in_requested_region(self, creds, no_sleep):
        """Test every call of a us-east-1 deploy, polling included, goes to that region."""
        session = FakeSession()
        session.add("POST", "ec2.us-east-1.amazonaws.com", by_action({
            "ImportKeyPair": ec2("ImportKeyPair", "<keyName>hft-bot-key</keyName>"),
            "CreateSecurityGroup": ec2("CreateSecurityGroup", "<groupId>sg-1</groupId>"),
            "AuthorizeSecurityGroupIngress": ec2("AuthorizeSecurityGroupIngress", "<return>true</return>"),
            "RunInstances": ec2("RunInstances", "<instancesSet><item><instanceId>i-0abc</instanceId></item></instancesSet>"),
            "DescribeInstances": [described("pending"), described("running", "54.0.0.1")],
        }, aws_action))
        adapter = AWSAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="us-east-1", ssh_public_key=SSH_KEY))

        assert result.to_dict() == {
            "instance_id": "i-0abc",
            "public_ip": "54.0.0.1",
            "region": "us-east-1",
            "status": "running",
        }
        assert all("ec2.us-east-1.amazonaws.com" in call[1] for call in session.calls)
        assert [aws_params(c)["Action"] for c in session.calls[:4]] == [
            "ImportKeyPair", "CreateSecurityGroup", "AuthorizeSecurityGroupIngress", "RunInstances",
        ]
        ingress = aws_params(session.calls[2])
        assert [ingress[f"IpPermissions.{n}.FromPort"] for n in (1, 2, 3)] == ["22", "443", "80"]
        run = aws_params(session.calls[3])
        assert run["KeyName"] == "hft-bot-key"
        assert run["SecurityGroupId.1"] == "sg-1"
        assert run["InstanceType"] == "t3.micro"

    def test_status_and_stop_use_given_region(self, creds):
        session = FakeSession()
        session.add("POST", "ec2.eu-west-1.amazonaws.com", by_action({
            "DescribeInstances": described("running", "54.0.0.2"),
            "StopInstances": ec2("StopInstances"),
        }, aws_action))
        adapter = AWSAdapter(session=session)

        status = adapter.status(creds, "i-0abc", region="eu-west-1")
        power = adapter.stop(creds, "i-0abc", region="eu-west-1")

        assert status.state == LifecycleStatus.RUNNING
        assert status.region == "eu-west-1"
        assert power.new_state == LifecycleStatus.STOPPED
        assert [aws_params(c)["Action"] for c in session.calls] == [
            "DescribeInstances", "DescribeInstances", "StopInstances",
        ]

    def test_find_by_ip_filters_on_address(self, creds):
        session = FakeSession()
        session.add("POST", "ec2.ap-east-1.amazonaws.com", by_action({
            "DescribeInstances": described("running", "54.0.0.3"),
        }, aws_action))
        adapter = AWSAdapter(session=session)

        found = adapter.find_by_ip(creds, "54.0.0.3", region="ap-east-1")

        assert found.instance_id == "i-0abc"
        params = aws_params(session.calls[0])
        assert params["Filter.1.Name"] == "ip-address"
        assert params["Filter.1.Value.1"] == "54.0.0.3"

    def test_existing_security_group_reused(self, creds):
        session = FakeSession()
        session.add("POST", "ec2.ap-northeast-1.amazonaws.com", by_action({
            "CreateSecurityGroup": ec2_error(400, "InvalidGroup.Duplicate"),
            "DescribeSecurityGroups": ec2("DescribeSecurityGroups", (
                "<securityGroupInfo><item><groupId>sg-existing</groupId></item></securityGroupInfo>"
            )),
            "AuthorizeSecurityGroupIngress": ec2_error(400, "InvalidPermission.Duplicate"),
        }, aws_action))
        adapter = AWSAdapter(session=session)

        assert adapter.ensure_firewall(creds, DeploySpec(), "ap-northeast-1") == "sg-existing"

    def test_insufficient_capacity(self, creds, no_sleep):
        """Test InsufficientInstanceCapacity surfaces as a capacity error without retries."""
        session = FakeSession()
        session.add("POST", "amazonaws.com", by_action({
            "RunInstances": ec2_error(500, "InsufficientInstanceCapacity"),
        }, aws_action))
        adapter = AWSAdapter(session=session, sleep=no_sleep)

        with pytest.raises(CapacityError) as exc_info:
            adapter.create_instance(creds, DeploySpec(), "ap-northeast-1", None, None)

        assert exc_info.value.provider_code == "InsufficientInstanceCapacity"
        assert len(session.calls) == 1

    def test_rejected_keys_are_invalid(self, creds):
        session = FakeSession()
        session.add("POST", "sts.amazonaws.com", ec2_error(403, "InvalidClientTokenId"))
        adapter = AWSAdapter(session=session)

        result = adapter.validate(creds)

        assert result.valid is False
        assert len(session.calls) == 1

    def test_auth_failure_code_on_bad_request(self, creds):
        session = FakeSession()
        session.add("POST", "amazonaws.com", ec2_error(400, "AuthFailure"))
        adapter = AWSAdapter(session=session)

        with pytest.raises(AuthError):
            adapter.status(creds, "i-0abc")


# -------------------------
# GCP
# -------------------------

def gce(status, ip=None):
    config = {"type": "ONE_TO_ONE_NAT", "natIP": ip} if ip else {"type": "ONE_TO_ONE_NAT"}
    return {"name": "hft-bot", "status": status, "networkInterfaces": [{"accessConfigs": [config]}]}


class TestGCPAdapter:

    @pytest.fixture
    def creds(self, rsa_pem):
        return CloudCredential("gcp", {
            "client_email": "bot@p1.iam.gserviceaccount.com",
            "private_key": rsa_pem,
            "project_id": "p1",
        })

    @pytest.fixture
    def session(self):
        session = FakeSession()
        session.add("POST", "oauth2.googleapis.com/token", FakeResponse(200, {"access_token": "ya29.t", "expires_in": 3600}))
        return session

    def test_deploy_in_requested_region(self, creds, session, no_sleep):
        """Test the zone follows the deploy region for create and every poll."""
        session.add("POST", "/global/firewalls", FakeResponse(200, {"name": "op-fw"}))
        session.add("POST", "/zones/us-east1-a/instances", FakeResponse(200, {"name": "op-1"}))
        session.add("GET", "/zones/us-east1-a/instances/hft-bot", [
            FakeResponse(200, gce("STAGING")),
            FakeResponse(200, gce("RUNNING", "34.0.0.1")),
        ])
        adapter = GCPAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="us-east1", ssh_public_key=SSH_KEY))

        assert result.instance_id == "hft-bot"
        assert result.public_ip == "34.0.0.1"
        assert result.region == "us-east1"
        assert len(session.calls_to("oauth2.googleapis.com")) == 1
        firewall = session.calls_to("/global/firewalls")[0][2]
        assert firewall["json"]["allowed"][0]["ports"] == ["22", "443", "80"]
        assert firewall["headers"]["Authorization"] == "Bearer ya29.t"
        create = session.calls_to("/zones/us-east1-a/instances")[0][2]["json"]
        assert create["machineType"] == "zones/us-east1-a/machineTypes/e2-micro"
        assert create["metadata"]["items"][0]["value"] == f"ubuntu:{SSH_KEY}"

    def test_token_request_is_jwt_bearer(self, creds, session):
        session.add("GET", "/projects/p1", FakeResponse(200, {"name": "p1"}))
        adapter = GCPAdapter(session=session)

        assert adapter.validate(creds).valid is True

        body = session.calls_to("oauth2.googleapis.com")[0][2]["data"]
        assert body["grant_type"] == "urn:ietf:params:oauth:grant-type:jwt-bearer"
        assert body["assertion"].count(".") == 2

    def test_stop_in_host_zone(self, creds, session):
        session.add("POST", "/zones/europe-west1-a/instances/hft-bot/stop", FakeResponse(200, {"name": "op-2"}))
        session.add("GET", "/zones/europe-west1-a/instances/hft-bot", FakeResponse(200, gce("RUNNING", "34.0.0.2")))
        adapter = GCPAdapter(session=session)

        result = adapter.stop(creds, "hft-bot", region="europe-west1")

        assert result.prev_state == LifecycleStatus.RUNNING
        assert len(session.calls_to("/zones/europe-west1-a/instances/hft-bot/stop")) == 1

    def test_find_by_ip_across_zones(self, creds, session):
        session.add("GET", "/aggregated/instances", FakeResponse(200, {"items": {
            "zones/asia-northeast1-a": {"warning": {"code": "NO_RESULTS_ON_PAGE"}},
            "zones/us-west1-b": {"instances": [gce("RUNNING", "34.0.0.3")]},
        }}))
        adapter = GCPAdapter(session=session)

        found = adapter.find_by_ip(creds, "34.0.0.3")

        assert found.instance_id == "hft-bot"
        assert found.region == "us-west1"
        assert adapter.find_by_ip(creds, "10.9.9.9") is None

    def test_existing_firewall_accepted(self, creds, session):
        session.add("POST", "/global/firewalls", FakeResponse(409, {"error": {
            "code": 409, "message": "exists", "errors": [{"reason": "alreadyExists"}],
        }}))
        adapter = GCPAdapter(session=session)

        assert adapter.ensure_firewall(creds, DeploySpec(), "asia-northeast1") == "hft-bot-fw"

    def test_zone_exhausted(self, creds, session):
        session.add("POST", "/zones/asia-northeast1-a/instances", FakeResponse(400, {"error": {
            "code": 400, "message": "no resources", "errors": [{"reason": "ZONE_RESOURCE_POOL_EXHAUSTED"}],
        }}))
        adapter = GCPAdapter(session=session)

        with pytest.raises(CapacityError) as exc_info:
            adapter.create_instance(creds, DeploySpec(), "asia-northeast1", None, None)
        assert exc_info.value.provider_code == "ZONE_RESOURCE_POOL_EXHAUSTED"


# -------------------------
# Oracle
# -------------------------

def oci_instance(state):
    return {"id": "ocid1.instance.1", "lifecycleState": state}


def oci_payload(call):
    return json.loads(call[2]["data"])


class TestOracleAdapter:

    @pytest.fixture
    def creds(self, rsa_pem):
        return CloudCredential("oracle", {
            "tenancy_ocid": "ocid1.tenancy.1",
            "user_ocid": "ocid1.user.1",
            "fingerprint": "aa:bb",
            "private_key": rsa_pem,
            "subnet_ocid": "ocid1.subnet.1",
            "image_ocid": "ocid1.image.1",
            "availability_domain": "AD-1",
        })

    def test_deploy_in_requested_region(self, creds, no_sleep):
        """Test NSG rules, launch and the VNIC address lookup all go to the deploy region."""
        session = FakeSession()
        session.add("GET", "/subnets/ocid1.subnet.1", FakeResponse(200, {"id": "ocid1.subnet.1", "vcnId": "ocid1.vcn.1"}))
        session.add("POST", "/actions/addSecurityRules", FakeResponse(200, {"securityRules": []}))
        session.add("POST", "/networkSecurityGroups", FakeResponse(200, {"id": "ocid1.nsg.1"}))
        session.add("POST", "/instances", FakeResponse(200, oci_instance("PROVISIONING")))
        session.add("GET", "/instances/ocid1.instance.1", [
            FakeResponse(200, oci_instance("PROVISIONING")),
            FakeResponse(200, oci_instance("RUNNING")),
        ])
        session.add("GET", "/vnicAttachments", FakeResponse(200, [
            {"vnicId": "ocid1.vnic.old", "lifecycleState": "DETACHED"},
            {"vnicId": "ocid1.vnic.1", "lifecycleState": "ATTACHED"},
        ]))
        session.add("GET", "/vnics/ocid1.vnic.1", FakeResponse(200, {"publicIp": "129.0.0.1"}))
        adapter = OracleAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="us-ashburn-1", ssh_public_key=SSH_KEY))

        assert result.instance_id == "ocid1.instance.1"
        assert result.public_ip == "129.0.0.1"
        assert all("iaas.us-ashburn-1.oraclecloud.com" in call[1] for call in session.calls)
        rules = oci_payload(session.calls_to("/actions/addSecurityRules")[0])["securityRules"]
        assert [r["tcpOptions"]["destinationPortRange"]["min"] for r in rules] == [22, 443, 80]
        launch = oci_payload(session.calls_to("/instances")[0])
        assert launch["createVnicDetails"]["nsgIds"] == ["ocid1.nsg.1"]
        assert launch["metadata"]["ssh_authorized_keys"] == SSH_KEY
        headers = session.calls_to("/instances")[0][2]["headers"]
        assert headers["authorization"].startswith('Signature version="1",keyId="ocid1.tenancy.1/ocid1.user.1/aa:bb"')

    def test_stopped_status_skips_address_lookup(self, creds):
        session = FakeSession()
        session.add("GET", "/instances/ocid1.instance.1", FakeResponse(200, oci_instance("STOPPED")))
        adapter = OracleAdapter(session=session)

        status = adapter.status(creds, "ocid1.instance.1", region="eu-frankfurt-1")

        assert status.state == LifecycleStatus.STOPPED
        assert status.region == "eu-frankfurt-1"
        assert [call[1] for call in session.calls] == [
            "https://iaas.eu-frankfurt-1.oraclecloud.com/20160918/instances/ocid1.instance.1",
        ]

    def test_find_by_ip(self, creds):
        session = FakeSession()
        session.add("GET", "/instances?compartmentId=", FakeResponse(200, [
            {"id": "ocid1.instance.0", "lifecycleState": "STOPPED"},
            oci_instance("RUNNING"),
        ]))
        session.add("GET", "/vnicAttachments", FakeResponse(200, [{"vnicId": "ocid1.vnic.1", "lifecycleState": "ATTACHED"}]))
        session.add("GET", "/vnics/ocid1.vnic.1", FakeResponse(200, {"publicIp": "129.0.0.2"}))
        adapter = OracleAdapter(session=session)

        found = adapter.find_by_ip(creds, "129.0.0.2", region="ap-osaka-1")

        assert found.instance_id == "ocid1.instance.1"
        assert found.region == "ap-osaka-1"

    def test_out_of_host_capacity(self, creds, no_sleep):
        """Test OCI's InternalError 'Out of host capacity' maps to a capacity error."""
        session = FakeSession()
        session.add("POST", "/instances", FakeResponse(500, {
            "code": "InternalError", "message": "Out of host capacity.",
        }))
        adapter = OracleAdapter(session=session, sleep=no_sleep)

        with pytest.raises(CapacityError) as exc_info:
            adapter.create_instance(creds, DeploySpec(), "ap-tokyo-1", None, "ocid1.nsg.1")

        assert exc_info.value.provider_code == "OutOfHostCapacity"
        assert len(session.calls) == 1


# -------------------------
# Alibaba
# -------------------------

def ecs_instance(status, ip=None, region="cn-hongkong"):
    return {"Instances": {"Instance": [{
        "InstanceId": "i-ali",
        "Status": status,
        "RegionId": region,
        "PublicIpAddress": {"IpAddress": [ip] if ip else []},
    }]}}


def ecs_action(kwargs):
    return kwargs["data"]["Action"]


class TestAlibabaAdapter:

    @pytest.fixture
    def creds(self):
        return CloudCredential("alibaba", {"access_key_id": "LTAIxx", "access_key_secret": "secret"})

    def test_deploy_in_requested_region(self, creds, no_sleep):
        """Test one ingress rule per port and a RegionId of the deploy region on every call."""
        session = FakeSession()
        session.add("POST", "ecs.aliyuncs.com", by_action({
            "ImportKeyPair": FakeResponse(200, {"KeyPairName": "hft-bot-key"}),
            "CreateSecurityGroup": FakeResponse(200, {"SecurityGroupId": "sg-ali"}),
            "AuthorizeSecurityGroup": FakeResponse(200, {"RequestId": "r"}),
            "CreateInstance": FakeResponse(200, {"InstanceId": "i-ali"}),
            "AllocatePublicIpAddress": FakeResponse(200, {"IpAddress": "47.0.0.1"}),
            "StartInstance": FakeResponse(200, {"RequestId": "r"}),
            "DescribeInstances": [
                FakeResponse(200, ecs_instance("Starting")),
                FakeResponse(200, ecs_instance("Running", "47.0.0.1")),
            ],
        }, ecs_action))
        adapter = AlibabaAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="cn-hongkong", ssh_public_key=SSH_KEY))

        assert result.public_ip == "47.0.0.1"
        forms = [call[2]["data"] for call in session.calls]
        assert {form["RegionId"] for form in forms} == {"cn-hongkong"}
        assert [f["PortRange"] for f in forms if f["Action"] == "AuthorizeSecurityGroup"] == [
            "22/22", "443/443", "80/80",
        ]
        assert [f["Action"] for f in forms][5:8] == ["CreateInstance", "AllocatePublicIpAddress", "StartInstance"]

    def test_stop_in_host_region(self, creds):
        session = FakeSession()
        session.add("POST", "ecs.aliyuncs.com", by_action({
            "DescribeInstances": FakeResponse(200, ecs_instance("Running", "47.0.0.2", region="us-east-1")),
            "StopInstance": FakeResponse(200, {"RequestId": "r"}),
        }, ecs_action))
        adapter = AlibabaAdapter(session=session)

        adapter.stop(creds, "i-ali", region="us-east-1")

        assert [(c[2]["data"]["Action"], c[2]["data"]["RegionId"]) for c in session.calls] == [
            ("DescribeInstances", "us-east-1"),
            ("StopInstance", "us-east-1"),
        ]

    def test_find_by_ip(self, creds):
        session = FakeSession()
        session.add("POST", "ecs.aliyuncs.com", FakeResponse(200, ecs_instance("Running", "47.0.0.3")))
        adapter = AlibabaAdapter(session=session)

        found = adapter.find_by_ip(creds, "47.0.0.3", region="cn-hongkong")

        assert found.instance_id == "i-ali"
        assert session.calls[0][2]["data"]["PublicIpAddresses"] == '["47.0.0.3"]'

    def test_no_stock(self, creds):
        session = FakeSession()
        session.add("POST", "ecs.aliyuncs.com", FakeResponse(403, {
            "Code": "OperationDenied.NoStock", "Message": "The resource is out of stock",
        }))
        adapter = AlibabaAdapter(session=session)

        with pytest.raises(CapacityError) as exc_info:
            adapter.create_instance(creds, DeploySpec(), "ap-northeast-1", None, "sg-ali")
        assert exc_info.value.provider_code == "OperationDenied.NoStock"

    def test_unknown_access_key(self, creds):
        session = FakeSession()
        session.add("POST", "ecs.aliyuncs.com", FakeResponse(404, {"Code": "InvalidAccessKeyId.NotFound"}))
        adapter = AlibabaAdapter(session=session)

        result = adapter.validate(creds)

        assert result.valid is False
        assert len(session.calls) == 1


# -------------------------
# Azure
# -------------------------

def azure_vm(power=None, state="Succeeded"):
    statuses = [{"code": f"ProvisioningState/{state.lower()}"}]
    if power:
        statuses.append({"code": power})
    return {
        "name": "hft-bot",
        "location": "westeurope",
        "properties": {"provisioningState": state, "instanceView": {"statuses": statuses}},
    }


class TestAzureAdapter:

    @pytest.fixture
    def creds(self):
        return CloudCredential("azure", {
            "tenant_id": "t-1",
            "client_id": "c-1",
            "client_secret": "s-1",
            "subscription_id": "sub-1",
            "resource_group": "rg",
        })

    @pytest.fixture
    def session(self):
        session = FakeSession()
        session.add("POST", "login.microsoftonline.com/t-1", FakeResponse(200, {"access_token": "az.t", "expires_in": 3600}))
        session.add("PUT", "/networkSecurityGroups/hft-bot-nsg", FakeResponse(201, {"id": "nsg-id"}))
        session.add("PUT", "/virtualNetworks/hft-bot-vnet", FakeResponse(201, {"id": "vnet-id"}))
        session.add("PUT", "/publicIPAddresses/hft-bot-ip", FakeResponse(201, {"id": "pip-id"}))
        session.add("PUT", "/networkInterfaces/hft-bot-nic", FakeResponse(201, {"id": "nic-id"}))
        session.add("GET", "/publicIPAddresses/hft-bot-ip", FakeResponse(200, {"properties": {"ipAddress": "20.0.0.1"}}))
        return session

    def test_deploy_in_requested_region(self, creds, session, no_sleep):
        """Test NSG rules per port and the VM placed in the deploy region."""
        session.add("PUT", "/virtualMachines/hft-bot", FakeResponse(201, {"name": "hft-bot"}))
        session.add("GET", "/virtualMachines/hft-bot", [
            FakeResponse(200, azure_vm(state="Creating")),
            FakeResponse(200, azure_vm("PowerState/running")),
        ])
        adapter = AzureAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="westeurope", ssh_public_key=SSH_KEY))

        assert result.public_ip == "20.0.0.1"
        assert result.region == "westeurope"
        assert len(session.calls_to("login.microsoftonline.com")) == 1
        nsg = session.calls_to("/networkSecurityGroups/hft-bot-nsg")[0][2]
        rules = nsg["json"]["properties"]["securityRules"]
        assert [r["properties"]["destinationPortRange"] for r in rules] == ["22", "443", "80"]
        assert nsg["params"]["api-version"] == "2023-09-01"
        assert nsg["headers"]["Authorization"] == "Bearer az.t"
        vm = [c for c in session.calls_to("/virtualMachines/hft-bot") if c[0] == "PUT"][0][2]["json"]
        assert vm["location"] == "westeurope"
        assert vm["properties"]["networkProfile"]["networkInterfaces"] == [{"id": "nic-id"}]
        assert vm["properties"]["hardwareProfile"]["vmSize"] == "Standard_B1s"

    def test_stop_deallocates(self, creds, session):
        session.add("POST", "/virtualMachines/hft-bot/deallocate", FakeResponse(202, {}))
        session.add("GET", "/virtualMachines/hft-bot", FakeResponse(200, azure_vm("PowerState/running")))
        adapter = AzureAdapter(session=session)

        result = adapter.stop(creds, "hft-bot")

        assert result.prev_state == LifecycleStatus.RUNNING
        assert len(session.calls_to("/deallocate")) == 1
        assert session.calls_to("/powerOff") == []

    def test_find_by_ip_through_public_addresses(self, creds, session):
        session.add("GET", "/publicIPAddresses", FakeResponse(200, {"value": [
            {"name": "other-ip", "properties": {"ipAddress": "20.0.0.9"}},
            {"name": "hft-bot-ip", "properties": {"ipAddress": "20.0.0.1"}},
        ]}))
        session.add("GET", "/virtualMachines/hft-bot", FakeResponse(200, azure_vm("PowerState/running")))
        adapter = AzureAdapter(session=session)

        found = adapter.find_by_ip(creds, "20.0.0.1")

        assert found.instance_id == "hft-bot"
        assert found.public_ip == "20.0.0.1"
        assert found.region == "westeurope"

    def test_sku_not_available(self, creds, session):
        session.add("PUT", "/virtualMachines/hft-bot", FakeResponse(409, {"error": {
            "code": "SkuNotAvailable", "message": "Standard_B1s is not available in japaneast",
        }}))
        adapter = AzureAdapter(session=session)

        with pytest.raises(CapacityError) as exc_info:
            adapter.create_instance(creds, DeploySpec(), "japaneast", None, "nsg-id")
        assert exc_info.value.provider_code == "SkuNotAvailable"


# -------------------------
# Vultr
# -------------------------

def vultr_instance(status, power, ip="0.0.0.0"):
    return {"instance": {"id": "inst-1", "status": status, "power_status": power, "main_ip": ip, "region": "sgp"}}


class TestVultrAdapter:

    @pytest.fixture
    def creds(self):
        return CloudCredential("vultr", {"api_key": "vk"})

    def test_deploy(self, creds, no_sleep):
        """Test one firewall rule per port and polling past the unassigned 0.0.0.0 address."""
        session = FakeSession()
        session.add("POST", "/ssh-keys", FakeResponse(201, {"ssh_key": {"id": "key-1"}}))
        session.add("POST", "/firewalls/fw-1/rules", FakeResponse(201, {"firewall_rule": {"id": 1}}))
        session.add("POST", "/firewalls", FakeResponse(201, {"firewall_group": {"id": "fw-1"}}))
        session.add("POST", "/instances", FakeResponse(202, {"instance": {"id": "inst-1"}}))
        session.add("GET", "/instances/inst-1", [
            FakeResponse(200, vultr_instance("pending", "running")),
            FakeResponse(200, vultr_instance("active", "running")),
            FakeResponse(200, vultr_instance("active", "running", "45.0.0.1")),
        ])
        adapter = VultrAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="sgp", ssh_public_key=SSH_KEY))

        assert result.public_ip == "45.0.0.1"
        assert len(session.calls_to("/instances/inst-1")) == 3
        assert [c[2]["json"]["port"] for c in session.calls_to("/rules")] == ["22", "443", "80"]
        create = session.calls_to("/instances")[0][2]
        assert create["json"]["region"] == "sgp"
        assert create["json"]["sshkey_id"] == ["key-1"]
        assert create["json"]["firewall_group_id"] == "fw-1"
        assert create["headers"]["Authorization"] == "Bearer vk"

    def test_stopped_status(self, creds):
        session = FakeSession()
        session.add("GET", "/instances/inst-1", FakeResponse(200, vultr_instance("active", "stopped", "45.0.0.1")))

        status = VultrAdapter(session=session).status(creds, "inst-1")

        assert status.state == LifecycleStatus.STOPPED
        assert status.region == "sgp"

    def test_find_by_ip(self, creds):
        session = FakeSession()
        session.add("GET", "/instances", FakeResponse(200, {"instances": [
            vultr_instance("active", "running", "45.0.0.2")["instance"],
        ]}))

        found = VultrAdapter(session=session).find_by_ip(creds, "45.0.0.2")

        assert found.instance_id == "inst-1"
        assert session.calls[0][2]["params"] == {"main_ip": "45.0.0.2"}


# -------------------------
# Contabo
# -------------------------

def contabo_instance(status, ip=None):
    instance = {"instanceId": 12345, "status": status, "region": "SIN"}
    if ip:
        instance["ipConfig"] = {"v4": {"ip": ip}}
    return instance


class TestContaboAdapter:

    @pytest.fixture
    def creds(self):
        return CloudCredential("contabo", {
            "client_id": "c-1",
            "client_secret": "s-1",
            "api_user": "ops@example.com",
            "api_password": "pw",
        })

    @pytest.fixture
    def session(self):
        session = FakeSession()
        session.add("POST", "auth.contabo.com", FakeResponse(200, {"access_token": "ct.t", "expires_in": 300}))
        return session

    def test_deploy(self, creds, session, no_sleep):
        """Test the secret id feeds sshKeys and no firewall call is made."""
        session.add("POST", "/secrets", FakeResponse(201, {"data": [{"secretId": 77}]}))
        session.add("POST", "/compute/instances", FakeResponse(201, {"data": [{"instanceId": 12345}]}))
        session.add("GET", "/compute/instances/12345", [
            FakeResponse(200, {"data": [contabo_instance("provisioning")]}),
            FakeResponse(200, {"data": [contabo_instance("running", "62.0.0.1")]}),
        ])
        adapter = ContaboAdapter(session=session, sleep=no_sleep)

        result = adapter.deploy(creds, DeploySpec(region="SIN", ssh_public_key=SSH_KEY))

        assert result.instance_id == "12345"
        assert result.public_ip == "62.0.0.1"
        create = session.calls_to("/compute/instances")[0][2]
        assert create["json"]["region"] == "SIN"
        assert create["json"]["sshKeys"] == [77]
        assert create["headers"]["x-request-id"]
        token = session.calls_to("auth.contabo.com")
        assert len(token) == 1
        assert token[0][2]["data"]["grant_type"] == "password"
        assert not any("firewall" in call[1] for call in session.calls)

    def test_find_by_ip(self, creds, session):
        session.add("GET", "/compute/instances", FakeResponse(200, {"data": [
            contabo_instance("stopped", "62.0.0.9"),
            contabo_instance("running", "62.0.0.2"),
        ]}))
        adapter = ContaboAdapter(session=session)

        found = adapter.find_by_ip(creds, "62.0.0.2")

        assert found.instance_id == "12345"
        assert found.state == LifecycleStatus.RUNNING
        assert adapter.find_by_ip(creds, "10.0.0.1") is None

    def test_unknown_instance(self, creds, session):
        session.add("GET", "/compute/instances/999", FakeResponse(200, {"data": []}))

        with pytest.raises(ProtocolError):
            ContaboAdapter(session=session).status(creds, "999")
