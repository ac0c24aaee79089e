"""Run the deployment supervisor service."""

from deploy_supervisor.__main__ import main

if __name__ == "__main__":
    main()
