"""Build, publish and pull container images to an ECR registry."""
