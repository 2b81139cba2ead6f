"""
kubeplane/templates/defaults.py

Built-in script templates (jinja2). A template directory passed to
TemplateManager.init overrides any of these by filename stem.

Every script is fed to `bash -s` on the target and must be safe to run again
after a partial earlier run.
"""

from __future__ import annotations

from typing import Dict

_PRELUDE = """\
set -euo pipefail
export DEBIAN_FRONTEND=noninteractive
"""

AUTHORIZED_KEYS = _PRELUDE + """\
HOME_DIR="$(getent passwd {{ user }} | cut -d: -f6)"
mkdir -p "${HOME_DIR}/.ssh"
touch "${HOME_DIR}/.ssh/authorized_keys"
chmod 700 "${HOME_DIR}/.ssh"
chmod 600 "${HOME_DIR}/.ssh/authorized_keys"
KEY='{{ public_key | trim }}'
grep -qxF "${KEY}" "${HOME_DIR}/.ssh/authorized_keys" || echo "${KEY}" >> "${HOME_DIR}/.ssh/authorized_keys"
"""

DOWNLOAD_K8S_BINARY = _PRELUDE + """\
sudo apt-get update
sudo apt-get install -y apt-transport-https ca-certificates curl gnupg
sudo mkdir -p /opt/kubeplane/bin
cd /opt/kubeplane/bin
for bin in kubectl kubeadm kubelet; do
  if [ ! -x "${bin}" ] || ! ./${bin} version --client 2>/dev/null | grep -q "v{{ k8s_version }}"; then
    sudo curl -fsSLo "${bin}" "https://dl.k8s.io/release/v{{ k8s_version }}/bin/{{ operating_system }}/{{ arch }}/${bin}"
    sudo chmod +x "${bin}"
  fi
  sudo ln -sf "/opt/kubeplane/bin/${bin}" "/usr/local/bin/${bin}"
done
"""

DOCKER = _PRELUDE + """\
if docker version --format '{% raw %}{{.Server.Version}}{% endraw %}' 2>/dev/null | grep -q "^{{ docker_version }}"; then
  echo "docker {{ docker_version }} already installed"
else
  curl -fsSL https://get.docker.com -o /tmp/get-docker.sh
  sudo VERSION={{ docker_version }} sh /tmp/get-docker.sh
fi
sudo mkdir -p /etc/docker
sudo bash -c 'cat > /etc/docker/daemon.json' <<'EOF'
{
  "exec-opts": ["native.cgroupdriver=systemd"],
  "log-driver": "json-file",
  "log-opts": {"max-size": "100m"}
}
EOF
sudo systemctl enable docker
sudo systemctl restart docker
"""

CNI = _PRELUDE + """\
sudo mkdir -p /opt/cni/bin
if [ ! -x /opt/cni/bin/bridge ]; then
  curl -fsSL "https://github.com/containernetworking/plugins/releases/download/v{{ cni_version }}/cni-plugins-linux-{{ arch }}-v{{ cni_version }}.tgz" \\
    | sudo tar -C /opt/cni/bin -xz
fi
sudo modprobe br_netfilter || true
sudo sysctl -w net.bridge.bridge-nf-call-iptables=1
sudo sysctl -w net.ipv4.ip_forward=1
"""

CERTIFICATES = _PRELUDE + """\
sudo mkdir -p {{ pki_dir }}
{% if ca_cert and ca_key %}
sudo bash -c 'cat > {{ pki_dir }}/ca.crt' <<'EOF'
{{ ca_cert | trim }}
EOF
sudo bash -c 'cat > {{ pki_dir }}/ca.key' <<'EOF'
{{ ca_key | trim }}
EOF
sudo chmod 600 {{ pki_dir }}/ca.key
{% else %}
echo "no CA material yet; kubeadm will generate it"
{% endif %}
"""

MANIFEST = _PRELUDE + """\
sudo mkdir -p /etc/kubeplane
sudo bash -c 'cat > {{ config_path }}' <<'EOF'
{% if is_master and is_bootstrap %}
apiVersion: kubeadm.k8s.io/v1beta2
kind: InitConfiguration
bootstrapTokens:
- token: "{{ token }}"
  ttl: "0"
localAPIEndpoint:
  advertiseAddress: {{ node_ip }}
  bindPort: 443
nodeRegistration:
  name: {{ node_name }}
  kubeletExtraArgs:
    node-ip: {{ node_ip }}
{% if cloud_provider %}    cloud-provider: {{ cloud_provider }}
{% endif %}
certificateKey: "{{ certificate_key }}"
---
apiVersion: kubeadm.k8s.io/v1beta2
kind: ClusterConfiguration
kubernetesVersion: v{{ k8s_version }}
clusterName: {{ cluster_name }}
controlPlaneEndpoint: {{ internal_dns }}:443
certificatesDir: /etc/kubernetes/pki
apiServer:
  certSANs:
  - {{ external_dns }}
  - {{ internal_dns }}
  extraArgs:
    authorization-mode: {{ "Node,RBAC" if rbac_enabled else "AlwaysAllow" }}
{% if cloud_provider %}    cloud-provider: {{ cloud_provider }}
{% endif %}
etcd:
  local:
    dataDir: /var/lib/etcd
{% if discovery_url %}    extraArgs:
      discovery: {{ discovery_url }}
{% endif %}
networking:
  dnsDomain: cluster.local
  podSubnet: {{ cidr }}
  serviceSubnet: {{ service_cidr }}
{% else %}
apiVersion: kubeadm.k8s.io/v1beta2
kind: JoinConfiguration
nodeRegistration:
  name: {{ node_name }}
  kubeletExtraArgs:
    node-ip: {{ node_ip }}
{% if cloud_provider %}    cloud-provider: {{ cloud_provider }}
{% endif %}
discovery:
  bootstrapToken:
    token: "{{ token }}"
    apiServerEndpoint: {{ internal_dns }}:443
    unsafeSkipCAVerification: true
{% if is_master %}
controlPlane:
  certificateKey: "{{ certificate_key }}"
  localAPIEndpoint:
    advertiseAddress: {{ node_ip }}
    bindPort: 443
{% endif %}
{% endif %}
EOF
"""

KUBELET = _PRELUDE + """\
sudo bash -c 'cat > /etc/systemd/system/kubelet.service' <<'EOF'
[Unit]
Description=kubelet: The Kubernetes Node Agent
After=docker.service
Requires=docker.service

[Service]
ExecStart=/usr/local/bin/kubelet
Restart=always
StartLimitInterval=0
RestartSec=10

[Install]
WantedBy=multi-user.target
EOF
sudo mkdir -p /etc/systemd/system/kubelet.service.d
sudo bash -c 'cat > /etc/systemd/system/kubelet.service.d/10-kubeadm.conf' <<'EOF'
[Service]
Environment="KUBELET_KUBECONFIG_ARGS=--bootstrap-kubeconfig=/etc/kubernetes/bootstrap-kubelet.conf --kubeconfig=/etc/kubernetes/kubelet.conf"
Environment="KUBELET_CONFIG_ARGS=--config=/var/lib/kubelet/config.yaml"
Environment="KUBELET_EXTRA_ARGS=--node-ip={{ node_ip }}{% if cloud_provider %} --cloud-provider={{ cloud_provider }}{% endif %}"
EnvironmentFile=-/var/lib/kubelet/kubeadm-flags.env
ExecStart=
ExecStart=/usr/local/bin/kubelet $KUBELET_KUBECONFIG_ARGS $KUBELET_CONFIG_ARGS $KUBELET_KUBEADM_ARGS $KUBELET_EXTRA_ARGS
EOF
sudo swapoff -a
sudo systemctl daemon-reload
sudo systemctl enable kubelet
"""

KUBEADM = _PRELUDE + """\
{% if is_master and is_bootstrap %}
if sudo test -f /etc/kubernetes/admin.conf && \\
   sudo kubectl --kubeconfig /etc/kubernetes/admin.conf get --raw=/healthz >/dev/null 2>&1; then
  echo "control plane already initialized"
else
  sudo kubeadm init --ignore-preflight-errors=NumCPU --config={{ config_path }} --upload-certs
fi
{% else %}
if sudo test -f /etc/kubernetes/kubelet.conf; then
  echo "node already joined"
else
  sudo kubeadm join --ignore-preflight-errors=NumCPU --config={{ config_path }}
fi
{% endif %}
{% if is_master %}
HOME_DIR="$(getent passwd {{ user }} | cut -d: -f6)"
sudo mkdir -p "${HOME_DIR}/.kube"
sudo cp -f /etc/kubernetes/admin.conf "${HOME_DIR}/.kube/config"
sudo chown "$(id -u {{ user }}):$(id -g {{ user }})" "${HOME_DIR}/.kube/config"
{% endif %}
"""

READ_JOIN_MATERIAL = _PRELUDE + """\
echo "==== ca.crt"
sudo base64 -w0 {{ pki_dir }}/ca.crt
echo
echo "==== ca.key"
sudo base64 -w0 {{ pki_dir }}/ca.key
echo
echo "==== admin.conf"
sudo base64 -w0 /etc/kubernetes/admin.conf
echo
"""

BOOTSTRAP_TOKEN = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
if sudo -E kubeadm token list | awk '{print $1}' | grep -qx "{{ token }}"; then
  echo "bootstrap token present"
else
  sudo -E kubeadm token create "{{ token }}" --ttl {{ ttl }}
fi
"""

NETWORK = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
{% if network_provider == "flannel" %}
curl -fsSL https://raw.githubusercontent.com/coreos/flannel/{{ version or "v0.12.0" }}/Documentation/kube-flannel.yml \\
  | sed "s|10.244.0.0/16|{{ cidr }}|g" \\
  | sudo -E kubectl apply -f -
{% elif network_provider == "calico" %}
curl -fsSL https://docs.projectcalico.org/{{ version or "v3.14" }}/manifests/calico.yaml \\
  | sed "s|192.168.0.0/16|{{ cidr }}|g" \\
  | sudo -E kubectl apply -f -
{% elif network_provider == "weave" %}
sudo -E kubectl apply -f "https://cloud.weave.works/k8s/net?k8s-version=$(sudo -E kubectl version | base64 | tr -d '\\n')&env.IPALLOC_RANGE={{ cidr }}"
{% endif %}
"""

CLOUD_CONTROLLER = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
{% if provider == "digitalocean" %}
sudo -E kubectl -n kube-system create secret generic digitalocean \\
  --from-literal=access-token='{{ access_token }}' \\
  --dry-run=client -o yaml | sudo -E kubectl apply -f -
sudo -E kubectl apply -f https://raw.githubusercontent.com/digitalocean/digitalocean-cloud-controller-manager/master/releases/{{ ccm_version or "v0.1.27" }}.yml
{% else %}
echo "{{ provider }} uses the in-tree cloud provider"
{% endif %}
"""

POSTSTART = _PRELUDE + """\
{% if is_master %}
export KUBECONFIG=/etc/kubernetes/admin.conf
for i in $(seq 1 {{ attempts }}); do
  if sudo -E kubectl get --raw=/healthz >/dev/null 2>&1; then
    echo "api server healthy"
    exit 0
  fi
  sleep {{ interval }}
done
echo "api server did not become healthy" >&2
exit 1
{% else %}
for i in $(seq 1 {{ attempts }}); do
  if systemctl is-active --quiet kubelet; then
    echo "kubelet running"
    exit 0
  fi
  sleep {{ interval }}
done
echo "kubelet not running" >&2
exit 1
{% endif %}
"""

CLUSTER_CHECK = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
for i in $(seq 1 {{ attempts }}); do
  READY=$(sudo -E kubectl get nodes -l node-role.kubernetes.io/master --no-headers 2>/dev/null | awk '$2 == "Ready"' | wc -l)
  echo "ready masters: ${READY}/{{ expected_masters }}"
  if [ "${READY}" -ge {{ expected_masters }} ]; then
    exit 0
  fi
  sleep {{ interval }}
done
echo "expected {{ expected_masters }} ready masters" >&2
exit 1
"""

STORAGECLASS = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
{% if provider == "aws" %}
sudo -E kubectl apply -f - <<'EOF'
apiVersion: storage.k8s.io/v1
kind: StorageClass
metadata:
  name: standard
  annotations:
    storageclass.kubernetes.io/is-default-class: "true"
provisioner: kubernetes.io/aws-ebs
parameters:
  type: gp2
EOF
{% elif provider == "digitalocean" %}
sudo -E kubectl apply -f https://raw.githubusercontent.com/digitalocean/csi-digitalocean/master/deploy/kubernetes/releases/csi-digitalocean-{{ csi_version or "v1.3.0" }}.yaml
{% endif %}
"""

TILLER = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
if ! command -v helm >/dev/null 2>&1; then
  curl -fsSL "https://get.helm.sh/helm-v{{ helm_version }}-linux-{{ arch }}.tar.gz" | tar -C /tmp -xz
  sudo mv /tmp/linux-{{ arch }}/helm /usr/local/bin/helm
fi
{% if helm_version.startswith("2.") %}
{% if rbac_enabled %}
sudo -E kubectl -n kube-system get serviceaccount tiller >/dev/null 2>&1 || \\
  sudo -E kubectl -n kube-system create serviceaccount tiller
sudo -E kubectl get clusterrolebinding tiller >/dev/null 2>&1 || \\
  sudo -E kubectl create clusterrolebinding tiller --clusterrole=cluster-admin --serviceaccount=kube-system:tiller
sudo -E helm init --service-account tiller --upgrade --wait
{% else %}
sudo -E helm init --upgrade --wait
{% endif %}
{% endif %}
"""

CLUSTERSERVICES = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
sudo -E kubectl apply -f https://github.com/kubernetes-sigs/metrics-server/releases/download/{{ metrics_server_version }}/components.yaml
sudo -E kubectl apply -f https://raw.githubusercontent.com/kubernetes/dashboard/{{ dashboard_version }}/aio/deploy/recommended.yaml
"""

PROMETHEUS = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
sudo -E kubectl get namespace {{ namespace }} >/dev/null 2>&1 || sudo -E kubectl create namespace {{ namespace }}
{% if helm_version.startswith("2.") %}
sudo -E helm upgrade --install prometheus stable/prometheus-operator --namespace {{ namespace }}{% if not rbac_enabled %} --set global.rbac.create=false{% endif %}
{% else %}
sudo -E helm repo add prometheus-community https://prometheus-community.github.io/helm-charts
sudo -E helm upgrade --install prometheus prometheus-community/kube-prometheus-stack --namespace {{ namespace }}{% if not rbac_enabled %} --set global.rbac.create=false{% endif %}
{% endif %}
"""

DRAIN = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
if sudo -E kubectl get node {{ node_name }} >/dev/null 2>&1; then
  sudo -E kubectl drain {{ node_name }} --ignore-daemonsets --delete-local-data --force --timeout={{ timeout }}s
else
  echo "node {{ node_name }} not registered"
fi
"""

EVACUATE = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
if sudo -E kubectl get node {{ node_name }} >/dev/null 2>&1; then
  sudo -E kubectl delete node {{ node_name }}
else
  echo "node {{ node_name }} already removed"
fi
"""

UNCORDON = _PRELUDE + """\
export KUBECONFIG=/etc/kubernetes/admin.conf
sudo -E kubectl uncordon {{ node_name }}
"""

UPGRADE = _PRELUDE + """\
sudo curl -fsSLo /opt/kubeplane/bin/kubeadm "https://dl.k8s.io/release/v{{ k8s_version }}/bin/linux/{{ arch }}/kubeadm"
sudo chmod +x /opt/kubeplane/bin/kubeadm
{% if is_master and is_bootstrap %}
sudo kubeadm upgrade apply -y v{{ k8s_version }}
{% else %}
sudo kubeadm upgrade node
{% endif %}
for bin in kubelet kubectl; do
  sudo curl -fsSLo "/opt/kubeplane/bin/${bin}" "https://dl.k8s.io/release/v{{ k8s_version }}/bin/linux/{{ arch }}/${bin}"
  sudo chmod +x "/opt/kubeplane/bin/${bin}"
done
sudo systemctl daemon-reload
sudo systemctl restart kubelet
"""

DEFAULT_TEMPLATES: Dict[str, str] = {
    "authorized_keys": AUTHORIZED_KEYS,
    "download_k8s_binary": DOWNLOAD_K8S_BINARY,
    "docker": DOCKER,
    "cni": CNI,
    "certificates": CERTIFICATES,
    "manifest": MANIFEST,
    "kubelet": KUBELET,
    "kubeadm": KUBEADM,
    "read_join_material": READ_JOIN_MATERIAL,
    "bootstrap_token": BOOTSTRAP_TOKEN,
    "network": NETWORK,
    "cloud_controller": CLOUD_CONTROLLER,
    "poststart": POSTSTART,
    "cluster_check": CLUSTER_CHECK,
    "storageclass": STORAGECLASS,
    "tiller": TILLER,
    "clusterservices": CLUSTERSERVICES,
    "prometheus": PROMETHEUS,
    "drain": DRAIN,
    "evacuate": EVACUATE,
    "uncordon": UNCORDON,
    "upgrade": UPGRADE,
}
