# run.py
# Description: Entry point for the bills-app sync command line.
#
# Imports
#
# Local Imports
from bills_app.cli import main
#
#######################################################################################################################
#
# Functions:

if __name__ == "__main__":
    main()

#
# End of run.py
#######################################################################################################################
