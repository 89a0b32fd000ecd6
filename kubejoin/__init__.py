"""kubejoin: enroll worker nodes into a Kubernetes cluster without kubeadm."""

__version__ = "0.1.0"
